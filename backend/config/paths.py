"""
Centralized path configuration for CodeDrop
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('CODEDROP_DATA_DIR', '/app/data')

# For development/testing outside Docker
if not os.path.exists('/app') and 'CODEDROP_DATA_DIR' not in os.environ:
    # Running locally, use relative paths
    DATA_DIR = './data'

# Database path - MUST be in the volume mount for persistence
DATABASE_PATH = os.path.join(DATA_DIR, 'codedrop.db')

# Logs (application log + security audit log)
LOG_DIR = os.path.join(DATA_DIR, 'logs')

# Staging area - one subdirectory per deployment id.
# Never served by the content web server.
STAGING_DIR = os.getenv('CODEDROP_STAGING_DIR', os.path.join(DATA_DIR, 'staging'))

# Managed content tree that deployments write into
CONTENT_DIR = os.getenv('CODEDROP_CONTENT_DIR', os.path.join(DATA_DIR, 'content'))
THEMES_DIR = os.getenv('CODEDROP_THEMES_DIR', os.path.join(CONTENT_DIR, 'themes'))
PLUGINS_DIR = os.getenv('CODEDROP_PLUGINS_DIR', os.path.join(CONTENT_DIR, 'plugins'))
MU_PLUGINS_DIR = os.getenv('CODEDROP_MU_PLUGINS_DIR', os.path.join(CONTENT_DIR, 'mu-plugins'))


def get_target_roots() -> dict:
    """Map of target type -> root directory for that type"""
    return {
        'theme': THEMES_DIR,
        'plugin': PLUGINS_DIR,
        'mu-plugin': MU_PLUGINS_DIR,
    }


# Ensure data directory exists with proper permissions
def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR, STAGING_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
