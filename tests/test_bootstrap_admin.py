import importlib.util
from pathlib import Path

import pytest

from filehaven.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_creates_admin_with_password(bootstrap):
    result = await bootstrap.bootstrap_admin("Root@Example.com", "Str0ng-Passw0rd", name="Root")

    assert result["status"] == "created"
    store = get_runtime().store
    user = store.get_user_by_email("root@example.com")
    assert user.role == "admin"
    assert store.get_password_record(user.id) is not None


async def test_promotes_existing_identity(bootstrap):
    user = get_runtime().store.create_user("member@example.com", provider="google")

    result = await bootstrap.bootstrap_admin("member@example.com", None)

    assert result == {"user_id": user.id, "email": "member@example.com", "status": "promoted"}
    assert get_runtime().store.get_user(user.id).role == "admin"

    again = await bootstrap.bootstrap_admin("member@example.com", None)
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap.bootstrap_admin("new@example.com", "Str0ng-Passw0rd", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("new@example.com") is None


async def test_new_admin_needs_password(bootstrap):
    with pytest.raises(ValueError):
        await bootstrap.bootstrap_admin("new@example.com", None)


def test_password_policy(bootstrap):
    assert bootstrap.validate_password("Str0ng-Passw0rd")
    assert not bootstrap.validate_password("short1!")
    assert not bootstrap.validate_password("alllowercaseletters")
