import os
import tempfile

# settings are cached on first import, so point them away from ./data up front
os.environ.setdefault("PLANNER_DATA_DIR", tempfile.mkdtemp(prefix="planner-tests-"))
os.environ.setdefault("PLANNER_DATABASE_URL", "sqlite:///:memory:")
