"""Local persistent fallback copy of each user's subscription record.

One JSON file per user. Never authoritative: it only answers when the
canonical store cannot, and only while younger than max_age_seconds.
"""

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from src.lambdas.shared.logging_utils import sanitize_for_log
from src.lambdas.shared.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class LocalFallbackStore:
    """File-backed fallback cache.

    Args:
        directory: Where files live; created on first save
        max_age_seconds: Older copies are treated as absent
        clock: Returns seconds; defaults to time.time
    """

    def __init__(
        self,
        directory: str | Path,
        max_age_seconds: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ):
        self._directory = Path(directory)
        self._max_age_seconds = max_age_seconds
        self._clock = clock or time.time

    def _path(self, user_id: str) -> Path:
        # user ids come from the auth provider; keep file names boring
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in user_id)
        return self._directory / f"subscription_{safe}.json"

    def save(self, user_id: str, record: SubscriptionRecord | None) -> None:
        """Atomically replace the stored copy (temp file + os.replace)."""
        payload = {
            "version": FORMAT_VERSION,
            "saved_at": self._clock(),
            "record": record.to_json_dict() if record is not None else None,
        }
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle)
                os.replace(tmp_name, self._path(user_id))
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.warning(
                "local_fallback_save_failed",
                extra={"user_id": sanitize_for_log(user_id), "error_type": type(e).__name__},
            )

    def load(self, user_id: str) -> tuple[SubscriptionRecord | None, float] | None:
        """Return (record, saved_at) or None when missing, corrupt or too old."""
        path = self._path(user_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(
                "local_fallback_unreadable",
                extra={"user_id": sanitize_for_log(user_id), "error_type": type(e).__name__},
            )
            return None

        if not isinstance(payload, dict) or payload.get("version") != FORMAT_VERSION:
            return None

        saved_at = payload.get("saved_at")
        if not isinstance(saved_at, (int, float)):
            return None
        if self._clock() - saved_at >= self._max_age_seconds:
            logger.debug(
                "local_fallback_expired",
                extra={"user_id": sanitize_for_log(user_id)},
            )
            return None

        raw = payload.get("record")
        if raw is None:
            return None, float(saved_at)
        try:
            return SubscriptionRecord.model_validate(raw), float(saved_at)
        except ValidationError:
            logger.warning(
                "local_fallback_invalid_record",
                extra={"user_id": sanitize_for_log(user_id)},
            )
            return None

    def clear(self, user_id: str) -> None:
        self._path(user_id).unlink(missing_ok=True)
