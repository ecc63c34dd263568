import importlib.util
from pathlib import Path

import pytest

from merchantauth.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_password_policy(bootstrap):
    assert bootstrap.validate_password("Str0ng-Password")
    assert not bootstrap.validate_password("short1A!")
    assert not bootstrap.validate_password("alllowercaseletters")


async def test_creates_admin_once(bootstrap):
    first = await bootstrap.bootstrap_admin(
        " Ops@Example.com ", "Str0ng-Password", name="Ops", mobile="7777777777", role="support"
    )
    second = await bootstrap.bootstrap_admin("ops@example.com", "Str0ng-Password", name="Ops")

    assert first["status"] == "created"
    assert second["status"] == "exists"
    admin = get_runtime().store.get_admin_by_email("ops@example.com")
    assert admin.role == "support"
    assert await get_runtime().auth.verify_password(admin.password_hash, "Str0ng-Password")


async def test_dry_run_writes_nothing(bootstrap):
    result = await bootstrap.bootstrap_admin(
        "ops@example.com", "Str0ng-Password", name="Ops", dry_run=True
    )

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_admin_by_email("ops@example.com") is None
