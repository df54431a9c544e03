from datetime import timedelta

from conftest import PASSWORD
from models import utcnow

FORGOT_MESSAGE = "Si cet email existe, un lien de réinitialisation a été envoyé"


def register(client, **overrides):
    payload = {"name": "Jo Dupont", "email": "jo@x.fr", "password": "Abcdef1"}
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def test_register_returns_profile_and_token(client, mailer):
    r = register(client)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    user = body["data"]["user"]
    assert user["email"] == "jo@x.fr"
    assert user["role"] == "user"
    assert "password" not in user
    assert body["data"]["token"]
    assert [m["subject"] for m in mailer.to("jo@x.fr")] == ["Bienvenue chez AutoParc !"]


def test_register_duplicate_email(client):
    register(client)
    r = register(client, email="JO@x.fr")
    assert r.status_code == 409
    assert r.json()["success"] is False


def test_register_lists_every_invalid_field(client):
    r = register(client, name="J", email="not-an-email", password="abc")
    assert r.status_code == 400
    fields = {e["field"] for e in r.json()["errors"]}
    assert {"name", "email", "password"} <= fields


def test_register_rejects_weak_password(client):
    r = register(client, password="abcdefg")
    assert r.status_code == 400
    assert "majuscule" in r.json()["errors"][0]["message"]


def test_login_success_records_last_login(client, make_user, services):
    user = make_user(email="login@autoparc.fr")
    r = client.post("/api/auth/login", json={"email": "login@autoparc.fr", "password": PASSWORD})
    assert r.status_code == 200
    assert r.json()["data"]["token"]
    assert services.repos.users.get(user.id).last_login is not None


def test_login_failures_do_not_reveal_account(client, make_user):
    make_user(email="known@autoparc.fr")
    wrong = client.post("/api/auth/login", json={"email": "known@autoparc.fr", "password": "Wrong123"})
    unknown = client.post("/api/auth/login", json={"email": "nobody@autoparc.fr", "password": "Wrong123"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["message"] == unknown.json()["message"] == "Email ou mot de passe incorrect"


def test_login_inactive_account(client, make_user):
    make_user(email="off@autoparc.fr", is_active=False)
    r = client.post("/api/auth/login", json={"email": "off@autoparc.fr", "password": PASSWORD})
    assert r.status_code == 401
    assert "désactivé" in r.json()["message"]


def test_me_requires_token(client):
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json()["message"] == "Accès refusé. Token manquant"


def test_me_rejects_garbage_token(client):
    r = client.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_me_returns_profile(client, make_user, headers):
    user = make_user()
    r = client.get("/api/auth/me", headers=headers(user))
    assert r.status_code == 200
    assert r.json()["data"]["user"]["id"] == user.id


def test_token_of_deactivated_user_is_refused(client, make_user, headers, services):
    user = make_user()
    token_headers = headers(user)
    user.is_active = False
    services.repos.users.save(user)
    assert client.get("/api/auth/me", headers=token_headers).status_code == 401


def test_forgot_password_gives_no_enumeration_signal(client, make_user, mailer):
    make_user(email="real@autoparc.fr")
    known = client.post("/api/auth/forgot-password", json={"email": "real@autoparc.fr"})
    unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@autoparc.fr"})
    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json() == {"success": True, "message": FORGOT_MESSAGE}
    assert mailer.to("ghost@autoparc.fr") == []
    assert len(mailer.to("real@autoparc.fr")) == 1


def test_forgot_password_stores_only_the_hash(client, make_user, mailer, services):
    user = make_user(email="hash@autoparc.fr")
    client.post("/api/auth/forgot-password", json={"email": "hash@autoparc.fr"})
    raw = mailer.reset_token_for("hash@autoparc.fr")
    stored = services.repos.users.get(user.id)
    assert raw and stored.password_reset_token
    assert stored.password_reset_token != raw
    assert stored.password_reset_token == services.auth.hash_reset_token(raw)


def test_reset_token_is_single_use(client, make_user, mailer):
    make_user(email="reset@autoparc.fr")
    client.post("/api/auth/forgot-password", json={"email": "reset@autoparc.fr"})
    token = mailer.reset_token_for("reset@autoparc.fr")

    first = client.post(f"/api/auth/reset-password/{token}", json={"password": "NewPass9"})
    assert first.status_code == 200
    assert first.json()["data"]["token"]
    login = client.post("/api/auth/login", json={"email": "reset@autoparc.fr", "password": "NewPass9"})
    assert login.status_code == 200

    second = client.post(f"/api/auth/reset-password/{token}", json={"password": "Other123"})
    assert second.status_code == 400
    assert second.json()["message"] == "Token invalide ou expiré"


def test_expired_reset_token_is_cleared(client, make_user, services):
    user = make_user()
    user.start_password_reset(services.auth.hash_reset_token("stale"), utcnow() - timedelta(minutes=1))
    services.repos.users.save(user)

    r = client.post("/api/auth/reset-password/stale", json={"password": "NewPass9"})
    assert r.status_code == 400
    assert services.repos.users.get(user.id).password_reset_token is None


def test_forgot_password_survives_email_failure(client, make_user, mailer):
    make_user(email="smtp@autoparc.fr")
    mailer.fail = True
    r = client.post("/api/auth/forgot-password", json={"email": "smtp@autoparc.fr"})
    assert r.status_code == 200


def test_change_password_requires_current(client, make_user, headers):
    user = make_user()
    r = client.put("/api/auth/change-password", headers=headers(user),
                   json={"currentPassword": "Wrong123", "password": "Brand9New"})
    assert r.status_code == 400

    r = client.put("/api/auth/change-password", headers=headers(user),
                   json={"currentPassword": PASSWORD, "password": "Brand9New", "confirmPassword": "Brand9New"})
    assert r.status_code == 200
    login = client.post("/api/auth/login", json={"email": user.email, "password": "Brand9New"})
    assert login.status_code == 200


def test_change_password_confirmation_mismatch(client, make_user, headers):
    user = make_user()
    r = client.put("/api/auth/change-password", headers=headers(user),
                   json={"currentPassword": PASSWORD, "password": "Brand9New", "confirmPassword": "Brand9Old"})
    assert r.status_code == 400


def test_update_profile(client, make_user, headers):
    user = make_user()
    r = client.put("/api/auth/profile", headers=headers(user),
                   json={"name": "Nouveau Nom", "company": "Garage Central", "phone": "+221771234567"})
    assert r.status_code == 200
    profile = r.json()["data"]["user"]
    assert profile["name"] == "Nouveau Nom"
    assert profile["phone"] == "+221771234567"


def test_logout(client, make_user, headers):
    user = make_user()
    r = client.post("/api/auth/logout", headers=headers(user))
    assert r.status_code == 200
    assert r.json()["success"] is True
