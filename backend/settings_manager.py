import json
import os
import logging
from pathlib import Path
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ターンテイキングの閾値 (実際のトランスポートに合わせて調整する)
TUNABLE_DEFAULTS: Dict[str, Any] = {
    "partial_debounce_ms": 100,
    "idle_auto_pass_seconds": 45,
    "min_partial_chars": 3,
    "time_warning_seconds": 30,
    "connect_timeout_seconds": 20,
    "disconnect_timeout_seconds": 5,
}

SECRET_KEYS = ("vapi_private_key",)


class SettingsManager:
    def __init__(self, config_path: str = None):
        self.config_path = Path(config_path or os.getenv("SETTINGS_PATH", "config.json"))
        self.settings: Dict[str, Any] = {}
        self._load_settings()

    def _defaults(self) -> Dict[str, Any]:
        defaults = {
            "vapi_private_key": os.getenv("VAPI_PRIVATE_KEY", ""),
            "vapi_org_id": os.getenv("VAPI_ORG_ID", ""),
            "vapi_api_url": os.getenv("VAPI_API_URL", "https://api.vapi.ai"),
            "storage_backend": os.getenv("STORAGE_BACKEND", "file"),
            "data_dir": os.getenv("DATA_DIR", "data"),
        }
        defaults.update(TUNABLE_DEFAULTS)
        return defaults

    def _load_settings(self) -> None:
        if not self.config_path.exists():
            # Create default
            self.settings = self._defaults()
            self._save_settings()
            return
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load settings: {e}")
            loaded = {}
        # 新しく増えたキーはデフォルトで埋める
        self.settings = {**self._defaults(), **loaded}

    def _save_settings(self) -> None:
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def update_settings(self, new_settings: Dict[str, Any]) -> None:
        self.settings.update(new_settings)
        self._save_settings()

    def public_settings(self) -> Dict[str, Any]:
        """秘密鍵を伏せた設定 (GET /api/settings 用)"""
        masked = dict(self.settings)
        for key in SECRET_KEYS:
            if masked.get(key):
                masked[key] = "********"
        return masked


settings_manager = SettingsManager()
