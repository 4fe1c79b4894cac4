"""
Root conftest.py for DockPilot.

Makes the flat backend modules (database, cli, main, config, utils,
updates, supervisor) importable without installing the package.
"""
import os
import sys

backend_dir = os.path.dirname(os.path.abspath(__file__))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)
