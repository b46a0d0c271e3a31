from ident_switch.core.errors import ProtocolConnectionError
from ident_switch.switcher import protocols


def add_account(client, email="bob@work.org", **fields):
    r = client.post("/api/v1/identities", json={"email": email, "name": "Bob"})
    assert r.status_code == 201
    iid = r.json()["id"]
    payload = {
        "enabled": True,
        "label": "Work",
        "imap_host": "imap.work.test",
        "imap_security": "ssl",
        "imap_username": email,
        "imap_password": "pw",
    }
    payload.update(fields)
    r = client.put(f"/api/v1/accounts/{iid}", json=payload)
    assert r.status_code == 200, r.text
    return iid, r.json()["id"]


def test_requires_login(client):
    r = client.get("/api/v1/identities")
    assert r.status_code == 401
    assert r.json() == {"detail": "Not authenticated"}


def test_login_rejects_bad_password(client, monkeypatch):
    def refuse(params, timeout=10):
        raise ProtocolConnectionError("imap", "authentication failed")

    monkeypatch.setattr(protocols, "imap_test", refuse)
    r = client.post("/auth/login", data={"username": "alice@example.com", "password": "nope"})
    assert r.status_code == 401


def test_login_creates_user_with_default_identity(logged_in):
    me = logged_in.get("/auth/me").json()
    assert me["username"] == "alice@example.com" and me["active_account"] == -1
    identities = logged_in.get("/api/v1/identities").json()
    assert [i["is_default"] for i in identities] == [True]


def test_save_account_and_list_masked(logged_in):
    iid, account_id = add_account(logged_in)
    [row] = logged_in.get("/api/v1/accounts").json()
    assert (row["id"], row["iid"], row["imap_host"]) == (account_id, iid, "ssl://imap.work.test")
    assert row["password"] == "••••••"

    data = logged_in.get(f"/api/v1/accounts/{iid}").json()
    assert (data["imap_host"], data["imap_security"]) == ("imap.work.test", "ssl")


def test_save_account_validation_error(logged_in):
    r = logged_in.post("/api/v1/identities", json={"email": "bob@work.org"})
    iid = r.json()["id"]
    r = logged_in.put(f"/api/v1/accounts/{iid}", json={"enabled": True, "imap_host": "h", "imap_port": "abc"})
    assert r.status_code == 422
    assert r.json()["detail"] == {"code": "port.num", "field": "imap_port"}


def test_save_account_connection_error(logged_in, monkeypatch):
    def refuse(params, timeout=10):
        raise ProtocolConnectionError("smtp", "refused")

    monkeypatch.setattr(protocols, "smtp_test", refuse)
    r = logged_in.post("/api/v1/identities", json={"email": "bob@work.org"})
    r = logged_in.put(f"/api/v1/accounts/{r.json()['id']}",
                      json={"enabled": True, "imap_host": "imap.work.test", "imap_password": "pw"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "smtp.connect"
    assert logged_in.get("/api/v1/accounts").json() == []


def test_test_connection_endpoint(logged_in):
    r = logged_in.post("/api/v1/accounts/test-connection",
                       json={"email": "bob@work.org", "imap_host": "imap.work.test", "imap_password": "pw"})
    assert r.json() == {"ok": True}


def test_switch_and_back(logged_in):
    _, account_id = add_account(logged_in)

    r = logged_in.post("/api/v1/switch", data={"_ident-id": str(account_id)}, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/mail?_mbox=INBOX"

    options = logged_in.get("/api/v1/switch").json()
    assert [(o["id"], o["selected"]) for o in options] == [(-1, False), (account_id, True)]
    assert options[1]["label"] == "Work"

    conn = logged_in.get("/api/v1/connection/imap").json()
    assert (conn["host"], conn["port"], conn["password"]) == ("imap.work.test", 993, "••••••")

    logged_in.post("/api/v1/switch", data={"_ident-id": "-1"}, follow_redirects=False)
    assert logged_in.get("/auth/me").json()["active_account"] == -1
    assert logged_in.get("/api/v1/connection/smtp").json() == {"protocol": "smtp", "default": True}


def test_switch_to_unknown_account(logged_in):
    r = logged_in.post("/api/v1/switch", data={"_ident-id": "999"}, follow_redirects=False)
    assert r.status_code == 204


def test_refresh_reports_new_mail(logged_in, unseen):
    _, account_id = add_account(logged_in)
    unseen.counts["bob@work.org"] = 1

    body = logged_in.post("/api/v1/refresh").json()
    assert [c["name"] for c in body["commands"]] == ["update_counts"]

    unseen.counts["bob@work.org"] = 3
    body = logged_in.post("/api/v1/refresh").json()
    notify, update = body["commands"]
    assert notify["args"]["label"] == "Work" and notify["args"]["count"] == 3 and notify["args"]["basic"] is True
    assert update["args"] == {str(account_id): {"unseen": 3, "baseline": 1}}
    assert body["total"] == 2


def test_alias_endpoint(logged_in):
    _, parent_id = add_account(logged_in)
    r = logged_in.post("/api/v1/identities", json={"email": "sales@work.org"})
    alias_iid = r.json()["id"]

    r = logged_in.post(f"/api/v1/accounts/{alias_iid}/alias", json={"parent_id": parent_id, "label": "Sales"})
    assert r.status_code == 201
    alias_id = r.json()["id"]

    r = logged_in.post("/api/v1/identities", json={"email": "other@work.org"})
    r = logged_in.post(f"/api/v1/accounts/{r.json()['id']}/alias", json={"parent_id": alias_id})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "alias.chain"


def test_folders_while_switched(logged_in):
    _, account_id = add_account(logged_in)
    logged_in.post("/api/v1/switch", data={"_ident-id": str(account_id)}, follow_redirects=False)

    r = logged_in.put("/api/v1/folders", json={"sent": "Gesendet"})
    assert r.status_code == 200
    assert r.json()["remote"] is True
    assert r.json()["folders"]["sent"] == "Gesendet"
    assert logged_in.get("/api/v1/folders").json()["title"] == "server: Work"


def test_deleting_active_identity_returns_to_primary(logged_in):
    iid, account_id = add_account(logged_in)
    logged_in.post("/api/v1/switch", data={"_ident-id": str(account_id)}, follow_redirects=False)

    assert logged_in.delete(f"/api/v1/identities/{iid}").status_code == 204
    assert logged_in.get("/auth/me").json()["active_account"] == -1
    assert logged_in.get("/api/v1/accounts").json() == []


def test_duplicate_label_is_rejected(logged_in):
    _, first_id = add_account(logged_in)
    r = logged_in.post("/api/v1/identities", json={"email": "carol@work.org"})
    iid = r.json()["id"]
    r = logged_in.put(f"/api/v1/accounts/{iid}", json={"enabled": True, "label": "Work", "imap_host": "imap.work.test",
                                                       "imap_security": "ssl", "imap_password": "pw"})
    assert r.status_code == 422
    assert r.json()["detail"] == {"code": "label.exists", "field": "label"}

    r = logged_in.post(f"/api/v1/accounts/{iid}/alias", json={"parent_id": first_id, "label": "Work"})
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "label.exists"
    assert [a["id"] for a in logged_in.get("/api/v1/accounts").json()] == [first_id]


def test_resaving_account_keeps_its_label(logged_in):
    iid, account_id = add_account(logged_in)
    r = logged_in.put(f"/api/v1/accounts/{iid}", json={"enabled": True, "label": "Work", "imap_host": "imap.work.test",
                                                       "imap_security": "ssl", "imap_password": "pw2"})
    assert r.status_code == 200
    assert r.json()["id"] == account_id


def test_logout_ends_session(logged_in):
    r = logged_in.post("/auth/logout", follow_redirects=False)
    assert r.status_code == 303
    assert logged_in.get("/auth/me").status_code == 401
