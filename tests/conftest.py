import sys
import os

# Make the root-level client modules (negotiation.py, session_orchestrator.py, ...)
# and the shared test doubles in this directory importable without an install.
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
tests_dir = os.path.dirname(os.path.abspath(__file__))
for path in (tests_dir, project_root):
    if path not in sys.path:
        sys.path.insert(0, path)
