import sys
import pathlib

import pytest

# Repo root on sys.path so `import armogrid` works without an install
ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings must come from defaults and explicit kwargs only, never a local .env
try:
    import pydantic_settings.sources as _psources
    _psources.DotEnvSettingsSource._read_env_files = lambda self, *args, **kwargs: {}
except Exception:
    # If pydantic-settings internals change, don't fail tests at import time.
    pass


@pytest.fixture(autouse=True)
def reset_monitor_status():
    from armogrid.services import meter_monitor

    saved = dict(meter_monitor.STATUS)
    yield
    meter_monitor.STATUS.clear()
    meter_monitor.STATUS.update(saved)
