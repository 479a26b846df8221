"""File-backed confirmation workflow for dangerous actions.

Each request is a JSON file that a human (or another process) can approve or
deny by editing its ``status`` field. Callers poll with ``check``.
"""

import os
import re
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from core.exceptions import ConfirmationNotFoundError, ConfirmationStateError


_ID_PATTERN = re.compile(r"^[0-9a-f]{8}$")


class ConfirmationStatus(str, Enum):
    """Lifecycle states of a confirmation request."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ConfirmationRequest(BaseModel):
    """A confirmation request as stored in its backing file (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    action: str
    reason: str
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    created_at: datetime
    resolved_at: Optional[datetime] = None
    file_path: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        # Hand-edited files may use "Approved" or " denied "
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("created_at", "resolved_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_pending(self) -> bool:
        return self.status == ConfirmationStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Snake-case view for command responses."""
        return {
            "id": self.id,
            "action": self.action,
            "reason": self.reason,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "file_path": str(self.file_path) if self.file_path else None,
        }


class ConfirmationManager:
    """
    Creates, polls and resolves confirmation requests stored as JSON files.

    State lives on disk, so pending requests survive restarts and requests
    resolved by another process are visible on the next ``check``.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

        logger.info(f"Confirmation manager initialized (directory: {self.directory})")

    def _path_for(self, confirmation_id: str) -> Path:
        return self.directory / f"confirm-{confirmation_id}.json"

    @staticmethod
    def _normalize_id(confirmation_id: str) -> str:
        normalized = (confirmation_id or "").strip().lower()
        if not _ID_PATTERN.match(normalized):
            raise ConfirmationNotFoundError(f"Confirmation request '{confirmation_id}' not found.")
        return normalized

    def _read(self, confirmation_id: str) -> ConfirmationRequest:
        path = self._path_for(confirmation_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfirmationNotFoundError(f"Confirmation request '{confirmation_id}' not found.")
        except OSError as e:
            raise ConfirmationNotFoundError(f"Confirmation file unreadable: '{path}' ({e})")
        except UnicodeDecodeError:
            logger.warning(f"Corrupt confirmation file {path}: not UTF-8")
            raise ConfirmationNotFoundError(f"Confirmation file is corrupt: '{path}'")

        try:
            request = ConfirmationRequest.model_validate_json(text)
        except pydantic.ValidationError as e:
            logger.warning(f"Corrupt confirmation file {path}: {e.error_count()} error(s)")
            raise ConfirmationNotFoundError(f"Confirmation file is corrupt: '{path}'")

        if request.id.lower() != confirmation_id:
            raise ConfirmationNotFoundError(f"Confirmation file is corrupt: '{path}' (id mismatch)")

        request.file_path = path
        return request

    def _write(self, request: ConfirmationRequest) -> None:
        """Write atomically: temp file in the same directory, then replace."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(request.id)
        payload = request.model_dump_json(by_alias=True, indent=2)

        fd, tmp_name = tempfile.mkstemp(prefix=f".confirm-{request.id}-", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        request.file_path = path

    def create(self, action: str, reason: str) -> ConfirmationRequest:
        """Create a pending request and its backing file."""
        with self._lock:
            confirmation_id = uuid.uuid4().hex[:8]
            while self._path_for(confirmation_id).exists():
                confirmation_id = uuid.uuid4().hex[:8]

            request = ConfirmationRequest(
                id=confirmation_id,
                action=action,
                reason=reason,
                status=ConfirmationStatus.PENDING,
                created_at=datetime.now(timezone.utc),
            )
            self._write(request)

        logger.info(f"Confirmation requested [{request.id}]: {action}")
        return request

    def check(self, confirmation_id: str) -> ConfirmationRequest:
        """
        Re-read the request from disk.

        An externally resolved file without ``resolvedAt`` gets it stamped.

        Raises:
            ConfirmationNotFoundError: Unknown/malformed id, missing or corrupt file
        """
        confirmation_id = self._normalize_id(confirmation_id)

        with self._lock:
            request = self._read(confirmation_id)
            if not request.is_pending and request.resolved_at is None:
                request.resolved_at = datetime.now(timezone.utc)
                try:
                    self._write(request)
                except OSError as e:
                    logger.error(f"Failed to stamp resolvedAt on confirmation {confirmation_id}: {e}")

        return request

    def approve(self, confirmation_id: str) -> ConfirmationRequest:
        return self._resolve(confirmation_id, ConfirmationStatus.APPROVED)

    def deny(self, confirmation_id: str) -> ConfirmationRequest:
        return self._resolve(confirmation_id, ConfirmationStatus.DENIED)

    def _resolve(self, confirmation_id: str, status: ConfirmationStatus) -> ConfirmationRequest:
        confirmation_id = self._normalize_id(confirmation_id)

        with self._lock:
            current = self._read(confirmation_id)
            if not current.is_pending:
                raise ConfirmationStateError(
                    f"Confirmation request '{confirmation_id}' is already {current.status.value}."
                )

            resolved = current.model_copy(update={
                "status": status,
                "resolved_at": datetime.now(timezone.utc),
            })
            self._write(resolved)

        logger.info(f"Confirmation {confirmation_id} {status.value}")
        return resolved

    def _scan(self) -> List[ConfirmationRequest]:
        if not self.directory.is_dir():
            return []

        requests = []
        for path in self.directory.glob("confirm-*.json"):
            confirmation_id = path.stem[len("confirm-"):]
            if not _ID_PATTERN.match(confirmation_id):
                continue
            try:
                requests.append(self._read(confirmation_id))
            except ConfirmationNotFoundError as e:
                logger.warning(f"Skipping confirmation file {path.name}: {e.message}")

        requests.sort(key=lambda r: r.created_at)
        return requests

    def list_pending(self) -> List[ConfirmationRequest]:
        """All pending requests in the directory, oldest first."""
        return [r for r in self._scan() if r.is_pending]

    def list_all(self) -> List[ConfirmationRequest]:
        return self._scan()
