"""
Shared test setup.

Settings are read once and cached, so the environment is pinned here before
any license_sync module is imported.
"""
import os

os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("EXTERNAL_LICENSE_API_URL", "http://licenses.test")
os.environ.setdefault("EXTERNAL_LICENSE_API_KEY", "test-key")
os.environ.setdefault("LICENSE_SYNC_RETRY_DELAY_MS", "1")
