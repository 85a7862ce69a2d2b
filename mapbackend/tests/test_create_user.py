import json

import pytest

from mapbackend.security.auth import Role, password_problems, verify_password
from mapbackend.tools.create_user import build_user_row, main
from mapbackend.tests.fakes import FakeStore


@pytest.mark.parametrize(
    "password,expected",
    [
        ("Harita!2024", []),
        ("short!A1", []),
        ("Ab1!", ["at least 8 characters"]),
        ("harita!2024", ["an uppercase letter"]),
        ("HARITA!2024", ["a lowercase letter"]),
        ("Harita!!!!", ["a digit"]),
        ("Harita2024", ["a special character"]),
        ("Aa1!" + "x" * 80, ["at most 72 bytes"]),
    ],
)
def test_password_problems(password, expected):
    assert password_problems(password) == expected


def test_build_user_row_defaults_full_name():
    row = build_user_row("ayse", None, Role.EDITOR)
    assert row["full_name"] == "ayse"
    assert row["role"] == "editor"
    assert "password" not in row
    assert row["created_at"] == row["updated_at"]


def test_dry_run_writes_nothing(capsys):
    store = FakeStore({"users": []})
    code = main(["--username", "ayse", "--password", "Harita!2024", "--dry-run"], clients=store.clients())
    assert code == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["username"] == "ayse"
    assert printed["role"] == "normal"
    assert store.log == []


def test_creates_user_with_hashed_password(capsys, monkeypatch):
    # keep the test fast: fewer bcrypt rounds
    import mapbackend.tools.create_user as create_user
    from mapbackend.security.auth import hash_password

    monkeypatch.setattr(create_user, "hash_password", lambda p: hash_password(p, rounds=4))
    store = FakeStore({"users": []})
    code = main(
        ["--username", " mehmet ", "--password", "Harita!2024", "--role", "admin", "--full-name", "Mehmet K"],
        clients=store.clients(),
    )
    assert code == 0
    row = store.tables["users"][0]
    assert row["username"] == "mehmet"
    assert row["role"] == "admin"
    assert row["password"] != "Harita!2024"
    assert verify_password("Harita!2024", row["password"])
    assert {c[0] for c in store.log} == {"service-key"}
    assert "created user id=" in capsys.readouterr().out


def test_weak_password_and_blank_username_exit_2(capsys):
    store = FakeStore({"users": []})
    assert main(["--username", "x", "--password", "weak"], clients=store.clients()) == 2
    assert "password needs" in capsys.readouterr().err
    assert main(["--username", "  ", "--password", "Harita!2024"], clients=store.clients()) == 2
    assert store.log == []


def test_store_error_exit_1(capsys, monkeypatch):
    import mapbackend.tools.create_user as create_user

    monkeypatch.setattr(create_user, "hash_password", lambda p: "$2b$04$fake")
    store = FakeStore({"users": []})
    store.errors["users"] = {"message": "duplicate key value", "code": "23505"}
    assert main(["--username", "root", "--password", "Harita!2024"], clients=store.clients()) == 1
    assert "duplicate key value" in capsys.readouterr().err


def test_unknown_role_is_rejected_by_argparse():
    with pytest.raises(SystemExit):
        main(["--username", "a", "--password", "Harita!2024", "--role", "owner"])
