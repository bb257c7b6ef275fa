from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from profitsync.credentials import FernetCipher, cipher_from_settings, open_credentials, seal_credentials
from profitsync.registry import account_context, build_adapter


def test_seal_and_open_credentials() -> None:
    cipher = FernetCipher(FernetCipher.generate_key())

    sealed = seal_credentials(cipher, {"access_token": "secret", "refresh_token": "", "empty": None})

    stored = json.loads(sealed)
    assert set(stored) == {"access_token"}
    assert "secret" not in sealed
    assert open_credentials(cipher, sealed) == {"access_token": "secret"}


def test_wrong_key_cannot_decrypt() -> None:
    sealed = seal_credentials(FernetCipher(FernetCipher.generate_key()), {"access_token": "secret"})
    with pytest.raises(ValueError):
        open_credentials(FernetCipher(FernetCipher.generate_key()), sealed)


def test_cipher_requires_key() -> None:
    with pytest.raises(ValueError):
        FernetCipher("")
    assert cipher_from_settings(SimpleNamespace(encryption_key=None)) is None


def test_build_adapter_decrypts_account_credentials() -> None:
    cipher = FernetCipher(FernetCipher.generate_key())
    account = {
        "id": "acc_1",
        "team_id": "t1",
        "platform": "shopify",
        "external_id": "shop.myshopify.com",
        "currency": "SEK",
        "credentials_json": seal_credentials(cipher, {"access_token": "shpat_123"}),
        "config_json": json.dumps({"include_transactions": True}),
    }

    adapter = build_adapter(account, cipher=cipher)

    assert adapter.source_kind == "shopify"
    assert adapter.credentials == {"access_token": "shpat_123"}
    assert adapter.ctx.config == {"include_transactions": True}
    assert account_context(account, None).credentials == {}


def test_build_adapter_unknown_platform() -> None:
    account = {"id": "acc_1", "team_id": "t1", "platform": "tiktok", "external_id": "x"}
    with pytest.raises(ValueError):
        build_adapter(account, cipher=None)
