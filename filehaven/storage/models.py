from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    provider: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class LoginLog:
    id: str
    email: str
    user_id: str
    provider: str
    ip: str
    device: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        user_id: str,
        provider: str,
        ip: str = "unknown",
        device: str = "Unknown Device",
    ) -> "LoginLog":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            user_id=user_id,
            provider=provider,
            ip=ip,
            device=device,
        )
