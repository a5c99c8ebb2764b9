"""
Model metadata cache.

The OpenRouter model list (ids, context lengths, input modalities) is
downloaded to data/models.json and refreshed when older than a day. All
lookups read the cached file, so a missing or unreadable cache degrades to
"model unknown, text only" rather than failing the turn.
"""

import json
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, List, Optional

from relaybot.utils.config import get_llm_config
from relaybot.utils.paths import data_dir

logger = logging.getLogger(__name__)

DEFAULT_MODALITIES = ["text"]
FETCH_TIMEOUT_SEC = 30


def _fetch_models(url: str) -> List[Dict[str, Any]]:
    req = urllib.request.Request(
        url,
        headers={"Accept": "application/json", "User-Agent": "relaybot/0.1 (python-urllib)"},
    )
    with urllib.request.urlopen(req, timeout=FETCH_TIMEOUT_SEC) as resp:
        body = json.loads(resp.read().decode("utf-8"))
    return body.get("data", []) if isinstance(body, dict) else []


class ModelsCache:
    """File-backed model catalog with a background refresh thread."""

    def __init__(
        self,
        cache_path: Optional[str] = None,
        url: Optional[str] = None,
        refresh_hours: Optional[float] = None,
        fetcher: Optional[Callable[[str], List[Dict[str, Any]]]] = None,
    ) -> None:
        cfg = get_llm_config()
        self.cache_path = cache_path or os.path.join(data_dir(), "models.json")
        self.url = url or cfg["models_url"]
        self.refresh_seconds = float(refresh_hours or cfg["models_refresh_hours"]) * 3600
        self._fetch = fetcher or _fetch_models
        self._models: Optional[List[Dict[str, Any]]] = None
        self._loaded_mtime: Optional[float] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def is_stale(self) -> bool:
        """True when the cache file is missing or older than the refresh interval."""
        try:
            mtime = os.path.getmtime(self.cache_path)
        except OSError:
            return True
        return time.time() - mtime > self.refresh_seconds

    def refresh(self) -> bool:
        """Download the model list and rewrite the cache file."""
        try:
            models = self._fetch(self.url)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning("Failed to fetch model list from %s: %s", self.url, e)
            return False
        os.makedirs(os.path.dirname(os.path.abspath(self.cache_path)), exist_ok=True)
        tmp = self.cache_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(models, f)
        os.replace(tmp, self.cache_path)
        with self._lock:
            self._models = None
        logger.info("Model list refreshed (%d models)", len(models))
        return True

    def start_daemon(self) -> None:
        """Refresh now if stale, then every refresh interval, on a daemon thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("Models cache daemon already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="models-cache", daemon=True)
        self._thread.start()
        logger.info("Models cache daemon started")

    def stop_daemon(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _run(self) -> None:
        if self.is_stale():
            self.refresh()
        while not self._stop.wait(self.refresh_seconds):
            self.refresh()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_models(self) -> List[Dict[str, Any]]:
        """Cached model list (empty if the file is missing or corrupt)."""
        with self._lock:
            try:
                mtime = os.path.getmtime(self.cache_path)
            except OSError:
                return []
            if self._models is None or mtime != self._loaded_mtime:
                try:
                    with open(self.cache_path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                except (OSError, ValueError) as e:
                    logger.warning("Could not read model cache %s: %s", self.cache_path, e)
                    return []
                self._models = data if isinstance(data, list) else []
                self._loaded_mtime = mtime
            return self._models

    def get_model(self, model_id: str) -> Optional[Dict[str, Any]]:
        for model in self.get_models():
            if model.get("id") == model_id:
                return model
        return None

    def model_exists(self, model_id: str) -> bool:
        return self.get_model(model_id) is not None

    def get_model_modalities(self, model_id: str) -> List[str]:
        """Input modalities of a model; unknown models are text only."""
        model = self.get_model(model_id) or {}
        modalities = (model.get("architecture") or {}).get("input_modalities")
        return list(modalities) if modalities else list(DEFAULT_MODALITIES)

    def find_closest_models(self, search: str, limit: int = 5) -> List[str]:
        """Model ids containing ``search`` (case-insensitive)."""
        term = (search or "").lower()
        return [
            m["id"] for m in self.get_models()
            if term in str(m.get("id", "")).lower()
        ][:limit]
