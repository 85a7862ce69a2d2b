import pytest

from mapbackend.security.auth import Role, hash_password, verify_password

URL = "/api/users"
PASSWORD = "Harita!2024"


@pytest.fixture
def people(store, monkeypatch):
    import mapbackend.services.user_admin as user_admin

    # keep the test fast: fewer bcrypt rounds
    monkeypatch.setattr(user_admin, "hash_password", lambda p: hash_password(p, rounds=4))
    store.tables["users"][0]["created_at"] = "2024-01-01T00:00:00+00:00"
    store.tables["users"] += [
        {
            "id": 21,
            "username": "ayse",
            "password": "$2b$04$x",
            "role": "normal",
            "full_name": "Ayse Yilmaz",
            "city": "Izmir",
            "created_at": "2024-03-01T00:00:00+00:00",
        },
        {
            "id": 22,
            "username": "boss",
            "password": "$2b$04$x",
            "role": "admin",
            "full_name": "Second Admin",
            "city": "Ankara",
            "created_at": "2024-02-01T00:00:00+00:00",
        },
    ]
    return store


def new_user(**overrides):
    body = {
        "username": "mehmet_k",
        "password": PASSWORD,
        "fullName": "Mehmet Kaya",
        "role": "editor",
        "city": "Bursa",
    }
    body.update(overrides)
    return body


def audit_actions(store):
    return [r.get("action") for r in store.tables["logs"] if r.get("action")]


def test_list_users_newest_first_without_passwords(client, people, auth):
    r = client.get(URL, headers=auth())
    assert r.status_code == 200
    users = r.json()["users"]
    assert [u["username"] for u in users] == ["ayse", "boss", "root"]
    assert users[0] == {
        "id": 21,
        "username": "ayse",
        "fullName": "Ayse Yilmaz",
        "role": "normal",
        "city": "Izmir",
        "createdAt": "2024-03-01T00:00:00+00:00",
        "updatedAt": None,
    }
    assert all("password" not in u for u in users)
    assert {c[0] for c in people.log} == {"service-key"}


def test_user_routes_need_an_admin(client, people, auth):
    assert client.get(URL).status_code == 401
    r = client.get(URL, headers=auth(Role.EDITOR, "ayse", "21"))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


def test_admin_token_is_rechecked_against_the_store(client, people, auth):
    # token says admin, the users table says normal
    r = client.post(URL, json=new_user(), headers=auth(Role.ADMIN, "ayse", "21"))
    assert r.status_code == 403
    assert people.calls("insert") == []


def test_create_user_hashes_password_and_audits(client, people, auth):
    r = client.post(URL, json=new_user(), headers=auth())
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["username"] == "mehmet_k"
    assert body["user"]["fullName"] == "Mehmet Kaya"
    assert body["user"]["city"] == "Bursa"
    assert "password" not in body["user"]

    row = people.tables["users"][-1]
    assert row["role"] == "editor"
    assert row["password"] != PASSWORD
    assert verify_password(PASSWORD, row["password"])
    assert audit_actions(people) == ["USER_CREATED"]
    audit = people.tables["logs"][-1]
    assert audit["user_id"] == "7"
    assert audit["username"] == "root"


@pytest.mark.parametrize(
    "overrides",
    [
        {"username": "ab"},
        {"username": "bad name"},
        {"fullName": "M"},
        {"role": "admin"},
        {"role": None},
        {"city": " "},
        {"password": "short"},
        {"password": None},
    ],
)
def test_create_user_validation(client, people, auth, overrides):
    r = client.post(URL, json=new_user(**overrides), headers=auth())
    assert r.status_code == 400
    assert people.calls("insert") == []


def test_create_user_rejects_markup(client, people, auth):
    r = client.post(URL, json=new_user(fullName="<script>x</script>"), headers=auth())
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "MALICIOUS_INPUT"


def test_create_duplicate_username_is_conflict(client, people, auth):
    r = client.post(URL, json=new_user(username="ayse"), headers=auth())
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "CONFLICT"
    assert people.calls("insert") == []


def test_failed_audit_write_does_not_undo_the_change(client, people, auth):
    people.errors["logs"] = {"message": "permission denied for table logs", "code": "42501"}
    r = client.post(URL, json=new_user(), headers=auth())
    assert r.status_code == 201
    assert people.tables["users"][-1]["username"] == "mehmet_k"


def test_update_user_lowercases_username(client, people, auth):
    body = {"username": "Ayse_K", "fullName": "Ayse Kaya", "role": "editor", "city": "Izmir"}
    r = client.put(f"{URL}/21", json=body, headers=auth())
    assert r.status_code == 200
    assert r.json()["user"]["username"] == "ayse_k"
    row = next(u for u in people.tables["users"] if u["id"] == 21)
    assert row["username"] == "ayse_k"
    assert row["role"] == "editor"
    assert row["updated_at"]
    assert audit_actions(people) == ["USER_UPDATED"]


@pytest.mark.parametrize(
    "user_id,username,expected",
    [
        ("99", "nobody", 404),
        ("22", "boss", 403),
        ("21", "root", 409),
    ],
)
def test_update_user_refusals(client, people, auth, user_id, username, expected):
    body = {"username": username, "fullName": "Some One", "role": "normal", "city": "Izmir"}
    r = client.put(f"{URL}/{user_id}", json=body, headers=auth())
    assert r.status_code == expected
    assert people.calls("update") == []


def test_delete_user(client, people, auth):
    r = client.delete(f"{URL}/21", headers=auth())
    assert r.status_code == 200
    assert r.json() == {"message": "User deleted"}
    assert [u["id"] for u in people.tables["users"]] == [7, 22]
    assert audit_actions(people) == ["USER_DELETED"]


@pytest.mark.parametrize("user_id,expected", [("99", 404), ("22", 403), ("7", 403)])
def test_delete_user_refusals(client, people, auth, user_id, expected):
    r = client.delete(f"{URL}/{user_id}", headers=auth())
    assert r.status_code == expected
    assert people.calls("delete") == []
    assert len(people.tables["users"]) == 3
