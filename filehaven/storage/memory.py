from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from filehaven.logging import get_logger
from filehaven.storage.errors import ConstraintViolation
from filehaven.storage.models import LoginLog, User


class MemoryStore:
    """In-process record store for development and tests.

    When ``fs_root`` is given, state is mirrored to ``<fs_root>/state/memory_store.json``
    so a restarted dev server keeps its accounts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.login_logs: List[LoginLog] = []
        # RLock so helpers can be nested inside a locked section
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        provider: Optional[str] = None,
        role: str = "user",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and any(existing.phone == phone for existing in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            now = datetime.utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                phone=phone,
                provider=provider,
                role=role,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.phone == phone), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = list(self.users.values())
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Optional[User]:
        """Apply the given fields; ``None`` leaves a field unchanged."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if phone and any(
                other.phone == phone for other in self.users.values() if other.id != user_id
            ):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if name is not None:
                user.name = name
            if phone is not None:
                user.phone = phone
            if role is not None:
                user.role = role
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        """Remove the identity together with its credential and login history."""
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.login_logs = [e for e in self.login_logs if e.user_id != user_id]
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # login activity
    def create_login_log(
        self,
        email: str,
        user_id: str,
        provider: str,
        *,
        ip: str = "unknown",
        device: str = "Unknown Device",
    ) -> LoginLog:
        entry = LoginLog.new(email, user_id, provider, ip=ip, device=device)
        with self._data_lock:
            self.login_logs.append(entry)
            self._persist_state()
        return entry

    def list_login_logs(self, limit: int = 500) -> List[LoginLog]:
        with self._data_lock:
            ordered = sorted(self.login_logs, key=lambda e: e.timestamp, reverse=True)
            return ordered[:limit]

    def list_login_logs_for_user(self, user_id: str) -> List[LoginLog]:
        with self._data_lock:
            matches = [e for e in self.login_logs if e.user_id == user_id]
            return sorted(matches, key=lambda e: e.timestamp, reverse=True)

    def delete_login_logs_for_user(self, user_id: str) -> int:
        with self._data_lock:
            before = len(self.login_logs)
            self.login_logs = [e for e in self.login_logs if e.user_id != user_id]
            deleted = before - len(self.login_logs)
            if deleted:
                self._persist_state()
            return deleted

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "phone": user.phone,
            "provider": user.provider,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            phone=data.get("phone"),
            provider=data.get("provider"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_login_log(self, entry: LoginLog) -> dict:
        return {
            "id": entry.id,
            "email": entry.email,
            "user_id": entry.user_id,
            "provider": entry.provider,
            "ip": entry.ip,
            "device": entry.device,
            "timestamp": self._serialize_datetime(entry.timestamp),
        }

    def _deserialize_login_log(self, data: dict) -> LoginLog:
        return LoginLog(
            id=data["id"],
            email=data["email"],
            user_id=data["user_id"],
            provider=data["provider"],
            ip=data.get("ip", "unknown"),
            device=data.get("device", "Unknown Device"),
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state: Dict[str, Any] = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "login_logs": [self._serialize_login_log(e) for e in self.login_logs],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.login_logs = [
            self._deserialize_login_log(e) for e in data.get("login_logs", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            login_logs=len(self.login_logs),
        )
        return True
