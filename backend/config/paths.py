"""
Centralized path configuration for DockPilot
Ensures all modules use consistent, volume-mounted paths
"""

import os

# The /app/data directory is mounted as a volume in the container
DATA_DIR = os.getenv('DOCKPILOT_DATA_DIR', '/app/data')

# For development/testing outside the container
if not os.getenv('DOCKPILOT_DATA_DIR') and not os.path.exists('/app'):
    DATA_DIR = './data'

# Check/update bookkeeping database
DATABASE_PATH = os.path.join(DATA_DIR, 'dockpilot.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Self-upgrade supervisor state (JSON, written atomically)
SUPERVISOR_DIR = os.path.join(DATA_DIR, 'supervisor')
SUPERVISOR_STATE_PATH = os.path.join(SUPERVISOR_DIR, 'self-upgrade.json')

LOG_DIR = os.path.join(DATA_DIR, 'logs')

