import os
import sys
import tempfile

# Ensure project root is on sys.path so `import oloro` works when running tests
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Keep tests away from the real data directory and network probes.
os.environ.setdefault("OLORO_DATA_DIR", tempfile.mkdtemp(prefix="oloro-tests-"))
os.environ.setdefault("OLORO_CONNECTIVITY_PROBE", "0")
