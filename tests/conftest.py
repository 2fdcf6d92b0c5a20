import os
import sys
from pathlib import Path

tests_root = os.path.abspath(os.path.dirname(__file__))
repo_root = os.path.abspath(os.path.join(tests_root, ".."))
services_path = Path(repo_root) / "services"
sys.path.insert(0, repo_root)
sys.path.insert(0, tests_root)
sys.path.insert(0, str(services_path))

os.environ.setdefault("PG_PASS", "greenbro_dev")
