from prepfox.models_sqlalchemy.models import CarrierConfiguration
from prepfox.utils import crypto


def test_encrypt_decrypt_and_passthrough():
    token = crypto.encrypt("ups-access-token")

    assert token.startswith("ENC:v1:")
    assert crypto.decrypt(token) == "ups-access-token"
    # Legacy plain-text rows are returned as-is.
    assert crypto.decrypt("plain-value") == "plain-value"
    assert crypto.encrypt(None) is None
    assert crypto.decrypt(None) is None


def test_tampered_ciphertext_is_returned_unchanged():
    token = crypto.encrypt("secret")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    assert crypto.decrypt(tampered) == tampered


def test_carrier_configuration_stores_secrets_encrypted(db, user):
    config = CarrierConfiguration(user_id=user.id, carrier_name="ups")
    config.api_credentials = {"client_id": "cid", "client_secret": "csecret"}
    config.access_token = "tok-123"
    db.add(config)
    db.commit()

    assert config._access_token.startswith("ENC:v1:")
    assert "csecret" not in config._api_credentials
    assert config.access_token == "tok-123"
    assert config.api_credentials["client_secret"] == "csecret"
