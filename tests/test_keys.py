# tests/test_keys.py
"""Gestión de keys del dueño y validación desde el script cliente."""
import uuid
from datetime import timedelta

from sqlalchemy import select

from keygate.db.models import KeyDevice, LicenseKey, utcnow

from conftest import hdrs, run_db, seed_script, unique_ip


def _owner() -> str:
    return f"owner-{uuid.uuid4().hex[:8]}"


def _seed_key(owner_id=None, *, status="unused", expires_in=timedelta(hours=6), max_devices=1):
    async def work(s):
        script = await seed_script(s, owner_id=owner_id)
        key = LicenseKey(
            key_value=f"SH-id{uuid.uuid4().hex[:24]}",
            script_id=script.id,
            owner_id=script.owner_id,
            type="timed",
            status=status,
            max_devices=max_devices,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            note="manual",
        )
        s.add(key)
        await s.flush()
        return key.key_value, script
    return run_db(work)


def _key_row(key_value):
    async def work(s):
        return (await s.execute(select(LicenseKey).where(LicenseKey.key_value == key_value))).scalar_one_or_none()
    return run_db(work)


def _as(owner_id):
    return {"X-User-Id": owner_id}


# ---------------------------------------------------------------------------
# /keys
# ---------------------------------------------------------------------------
def test_owner_endpoints_require_user_header(client):
    r = client.get("/keys")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized", "message": "Missing X-User-Id"}


def test_owner_header_is_ignored_unless_trusted(client, monkeypatch):
    from keygate.core.config import settings

    owner = _owner()
    key_value, _ = _seed_key(owner)
    monkeypatch.setattr(settings, "trust_owner_header", False)

    for r in (
        client.get("/keys", headers=_as(owner)),
        client.delete(f"/keys/{key_value}", headers=_as(owner)),
    ):
        assert r.status_code == 403
        assert r.json()["error"] == "Forbidden"
    assert _key_row(key_value) is not None


def test_owner_lists_only_own_keys(client):
    owner, other = _owner(), _owner()
    mine, script = _seed_key(owner)
    _seed_key(other)

    r = client.get("/keys", headers=_as(owner))
    assert r.status_code == 200
    data = r.json()["data"]
    assert [k["keyValue"] for k in data] == [mine]
    assert data[0]["scriptId"] == script.id

    assert client.get(f"/keys/{mine}", headers=_as(other)).status_code == 404
    assert client.get(f"/keys?scriptId={script.id}", headers=_as(other)).json()["data"] == []


def test_overdue_keys_are_listed_as_expired(client):
    owner = _owner()
    key_value, _ = _seed_key(owner, status="active", expires_in=timedelta(minutes=-5))

    r = client.get("/keys", params={"status": "expired"}, headers=_as(owner))
    assert [k["keyValue"] for k in r.json()["data"]] == [key_value]
    assert client.get(f"/keys/{key_value}", headers=_as(owner)).json()["data"]["status"] == "expired"


def test_revoke_and_delete(client):
    owner = _owner()
    key_value, _ = _seed_key(owner)

    r = client.post(f"/keys/{key_value}/revoke", headers=_as(owner))
    assert r.json()["data"] == {"keyValue": key_value, "status": "revoked"}
    assert _key_row(key_value).status == "revoked"

    r = client.delete(f"/keys/{key_value}", headers=_as(owner))
    assert r.status_code == 200
    assert _key_row(key_value) is None

    r = client.delete(f"/keys/{key_value}", headers=_as(owner))
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


def test_getkey_settings_defaults_and_partial_update(client, getkey, make_script):
    owner = _owner()
    r = client.get("/keys/getkey-settings", headers=_as(owner))
    assert r.status_code == 200
    assert r.json()["data"] == {
        "getkeyEnabled": False,
        "checkpointCount": 2,
        "adLinks": [],
        "checkpointTimerSeconds": 10,
        "captchaEnabled": False,
        "keyDurationHours": 24,
        "maxKeysPerIp": 1,
        "cooldownHours": 24,
    }

    script = make_script(owner_id=owner)
    assert client.get(f"/public/script/{script.slug}").status_code == 404

    r = client.put(
        "/keys/getkey-settings",
        json={"getkeyEnabled": True, "checkpointCount": 3, "adLinks": ["https://ads.owner.test/a"]},
        headers=_as(owner),
    )
    data = r.json()["data"]
    assert data["checkpointCount"] == 3
    assert data["cooldownHours"] == 24

    info = client.get(f"/public/script/{script.slug}").json()["data"]
    # 1 enlace del dueño + el de plataforma: no se pueden exigir 3
    assert info["checkpointsRequired"] == 2
    assert len(info["adLinks"]) == 2


def test_getkey_settings_rejects_invalid_values(client):
    r = client.put("/keys/getkey-settings", json={"cooldownHours": 0}, headers=_as(_owner()))
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


# ---------------------------------------------------------------------------
# /verifier/validate
# ---------------------------------------------------------------------------
def _validate(client, key_value, **extra):
    return client.post("/verifier/validate", json={"keyValue": key_value, **extra}).json()


def test_validate_unknown_and_wrong_script(client):
    assert _validate(client, "SH-idnope")["valid"] is False

    key_value, script = _seed_key()
    body = _validate(client, key_value, scriptId="another-script")
    assert body == {"valid": False, "message": "Key does not belong to this script."}
    assert _validate(client, key_value, scriptId=script.id)["valid"] is True


def test_validate_activates_unused_key(client):
    key_value, script = _seed_key(status="unused")
    body = _validate(client, key_value)
    assert body["valid"] is True
    assert body["key"]["status"] == "active"
    assert body["key"]["scriptTitle"] == f"Script {script.slug}"

    row = _key_row(key_value)
    assert row.status == "active"
    assert row.last_activity_at is not None


def test_validate_marks_overdue_key_expired(client):
    key_value, _ = _seed_key(status="active", expires_in=timedelta(seconds=-1))
    assert _validate(client, key_value) == {"valid": False, "message": "Key has expired."}
    assert _key_row(key_value).status == "expired"


def test_validate_rejects_revoked_key(client):
    key_value, _ = _seed_key(status="revoked")
    assert _validate(client, key_value)["message"] == "Key has been revoked by the owner."


def test_validate_binds_devices_up_to_limit(client):
    key_value, _ = _seed_key(max_devices=1)

    assert _validate(client, key_value, hwid="hwid-1")["valid"] is True
    # El mismo dispositivo vuelve a entrar
    assert _validate(client, key_value, hwid="hwid-1")["valid"] is True

    body = _validate(client, key_value, hwid="hwid-2")
    assert body["valid"] is False
    assert body["message"].startswith("Device limit reached (1)")

    async def devices(s):
        key = (await s.execute(select(LicenseKey).where(LicenseKey.key_value == key_value))).scalar_one()
        res = await s.execute(select(KeyDevice.hwid).where(KeyDevice.key_id == key.id))
        return res.scalars().all()
    assert run_db(devices) == ["hwid-1"]


def test_public_key_validates_end_to_end(client, getkey, make_script):
    script = make_script(checkpoint_count=1)
    ip = unique_ip()
    token = client.post(
        "/public/start-session", json={"scriptSlug": script.slug}, headers=hdrs(ip)
    ).json()["data"]["token"]
    client.post(
        "/public/complete-checkpoint", json={"sessionToken": token, "checkpointIndex": 0}, headers=hdrs(ip)
    )
    key_value = client.post("/public/getkey", json={"sessionToken": token}, headers=hdrs(ip)).json()["data"]["keyValue"]

    body = _validate(client, key_value, scriptId=script.id, hwid="pc-1")
    assert body["valid"] is True
    assert body["key"]["type"] == "timed"
    assert body["key"]["maxDevices"] == 1

    listed = client.get("/keys", headers=_as(script.owner_id)).json()["data"]
    assert listed[0]["keyValue"] == key_value
    assert listed[0]["note"] == f"getkey:public:{ip}"
