import hashlib
import hmac

import pytest

from digiseller import callback_signature_base, sign_callback, verify_callback_signature

SECRET = "hook-secret"

PARAMS = {
    "amount": "12.50",
    "currency": "USD",
    "invoice_id": "987654",
    "seller_id": "123456",
}


def signed(params):
    out = dict(params)
    out["signature"] = sign_callback(params, SECRET)
    return out


def mutate(value: str) -> str:
    if not value:
        return "x"
    last = value[-1]
    return value[:-1] + ("0" if last != "0" else "1")


def test_base_string_is_sorted_key_value_pairs():
    shuffled = {k: PARAMS[k] for k in reversed(list(PARAMS))}
    assert callback_signature_base(shuffled) == "amount:12.50;currency:USD;invoice_id:987654;seller_id:123456;"


def test_signature_is_hmac_sha256_hex():
    base = callback_signature_base(PARAMS).encode()
    expected = hmac.new(SECRET.encode(), base, hashlib.sha256).hexdigest()
    assert sign_callback(PARAMS, SECRET) == expected


def test_valid_signature_accepted():
    assert verify_callback_signature(signed(PARAMS), SECRET) is True


def test_extra_parameters_are_ignored():
    params = signed(PARAMS)
    params["email"] = "buyer@example.com"
    assert verify_callback_signature(params, SECRET) is True


def test_missing_fields_sign_as_empty():
    params = {"amount": "1", "signature": ""}
    params["signature"] = sign_callback(params, SECRET)
    assert callback_signature_base(params) == "amount:1;currency:;invoice_id:;seller_id:;"
    assert verify_callback_signature(params, SECRET) is True


@pytest.mark.parametrize("field", ["amount", "currency", "invoice_id", "seller_id", "signature"])
def test_single_character_mutation_rejected(field):
    params = signed(PARAMS)
    params[field] = mutate(params[field])
    assert verify_callback_signature(params, SECRET) is False


def test_wrong_secret_rejected():
    assert verify_callback_signature(signed(PARAMS), "other-secret") is False


def test_missing_or_non_ascii_signature_rejected():
    params = dict(PARAMS)
    assert verify_callback_signature(params, SECRET) is False
    params["signature"] = "подпись"
    assert verify_callback_signature(params, SECRET) is False
