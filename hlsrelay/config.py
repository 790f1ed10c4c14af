import copy
import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json stays alongside the app regardless of
# where the user launches it from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_CONFIG = {
    "listen_host": "127.0.0.1",
    "listen_port": 0,  # 0 => pick a free port
    "proxy_path": "/stream",
    "cache_enabled": True,  # False => pass-through, Range forwarded upstream
    "segment_cache_ttl_seconds": 300,
    "playlist_cache_ttl_seconds": 30,
    "cache_sweep_interval_seconds": 60,
    "upstream_timeout_seconds": 30,
    "upstream_referer": "https://kwik.si/",  # empty => target's own origin
    "upstream_origin": "https://kwik.si",
    "default_user_agent": DEFAULT_USER_AGENT,
    "preferred_manifest_swaps": {"/uwu.m3u8": "/master.m3u8"},
    "disguise_extensions": [".jpg"],
    "segment_name_markers": ["segment-"],
    "download_segment_timeout_seconds": 15,
    "download_manifest_timeout_seconds": 30,
    "download_retry_attempts": 3,
    "download_retry_backoff_seconds": 1.0,  # linear: attempt * backoff
    "download_segment_delay_seconds": 0.1,
    "download_burst_every": 5,
    "download_burst_delay_seconds": 0.5,
    "download_concurrency": 1,  # 1-4
    "download_success_threshold": 0.8,
    "download_dir": os.path.join(APP_DIR, "downloads"),
    "download_work_dir": "",  # empty => use OS temp directory
    "remux_engine": "ffmpeg",  # ffmpeg | concat
    "log_level": "INFO",
}


class ConfigManager:
    def __init__(self, path=None):
        self.path = path or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(self.path):
            try:
                with open(self.path, 'r') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except (OSError, ValueError) as e:
                LOG.error("Error loading config %s: %s", self.path, e)
                return copy.deepcopy(DEFAULT_CONFIG)
        return copy.deepcopy(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings. Nested dicts (e.g. preferred_manifest_swaps) are merged too.
        """
        def merge(defaults, target):
            for key, val in defaults.items():
                if isinstance(val, dict):
                    if key not in target or not isinstance(target.get(key), dict):
                        target[key] = {}
                    merge(val, target[key])
                else:
                    target.setdefault(key, copy.deepcopy(val))
        merged = cfg if isinstance(cfg, dict) else {}
        merge(DEFAULT_CONFIG, merged)
        return merged

    def save_config(self):
        try:
            with open(self.path, 'w') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            LOG.error("Error saving config %s: %s", self.path, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()


def with_defaults(config=None) -> dict:
    """Return a config dict with every default key present."""
    merged = copy.deepcopy(DEFAULT_CONFIG)
    if config:
        merged.update(config)
    return merged
