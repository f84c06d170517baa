"""Tests for the L402 wire format."""

from lightning_gateway.l402 import (
    format_challenge,
    format_challenge_body,
    is_l402_header,
    parse_authorization,
)


class TestFormatChallenge:
    def test_basic_format(self):
        result = format_challenge("eyJwYXlt...", "lnbc50n1pj...")
        assert result == 'L402 macaroon="eyJwYXlt...", invoice="lnbc50n1pj..."'

    def test_with_real_values(self):
        invoice = "lnbc20n1pjq5xxxxxxxxxxxxxxxxxxxxxxx"
        voucher = "eyJwYXltZW50SGFzaCI6ImFiYzEyMyJ9"
        result = format_challenge(voucher, invoice)
        assert result.startswith("L402 ")
        assert f'invoice="{invoice}"' in result
        assert f'macaroon="{voucher}"' in result


class TestFormatChallengeBody:
    def test_includes_all_fields(self):
        body = format_challenge_body(
            "gw_1",
            "/forecast",
            5,
            invoice="lnbc50n1...",
            voucher="eyJwYXlt...",
            payment_hash="abc123",
            description="Test invoice",
        )
        assert body["success"] is False
        assert body["status"] == 402
        assert body["code"] == "PAYMENT_REQUIRED"
        assert body["gatewayId"] == "gw_1"
        assert body["path"] == "/forecast"
        assert body["invoice"] == "lnbc50n1..."
        assert body["macaroon"] == "eyJwYXlt..."
        assert body["paymentHash"] == "abc123"
        assert body["amountSats"] == 5
        assert body["description"] == "Test invoice"
        assert body["protocol"] == "L402"
        assert set(body["instructions"]) == {"step1", "step2", "step3"}
        assert "invoiceError" not in body
        assert "balanceSats" not in body

    def test_null_description(self):
        body = format_challenge_body("gw_1", "/", 1, invoice="lnbc...", voucher="eyJ...", payment_hash="abc")
        assert body["description"] is None

    def test_balance_included_when_known(self):
        body = format_challenge_body("gw_1", "/", 10, balance_sats=5)
        assert body["balanceSats"] == 5

    def test_without_invoice(self):
        body = format_challenge_body("gw_1", "/", 10)
        assert body["invoice"] is None
        assert body["macaroon"] is None
        assert "instructions" not in body
        assert "invoiceError" in body


class TestParseAuthorization:
    def test_valid_l402_header(self):
        result = parse_authorization("L402 eyJwYXltZW50SGFzaCI6ImFiYyJ9:deadbeef0123")
        assert result is not None
        assert result.voucher == "eyJwYXltZW50SGFzaCI6ImFiYyJ9"
        assert result.preimage == "deadbeef0123"

    def test_case_insensitive_prefix(self):
        result = parse_authorization("l402 mac123:pre456")
        assert result is not None
        assert result.voucher == "mac123"
        assert result.preimage == "pre456"

    def test_with_whitespace(self):
        result = parse_authorization("  L402   mac:pre  ")
        assert result is not None
        assert result.voucher == "mac"
        assert result.preimage == "pre"

    def test_missing_colon(self):
        assert parse_authorization("L402 voucherwithoutpreimage") is None

    def test_empty_voucher(self):
        assert parse_authorization("L402 :preimage") is None

    def test_empty_preimage(self):
        assert parse_authorization("L402 voucher:") is None

    def test_not_l402(self):
        assert parse_authorization("Bearer token123") is None

    def test_none_input(self):
        assert parse_authorization(None) is None

    def test_empty_string(self):
        assert parse_authorization("") is None

    def test_non_string_input(self):
        assert parse_authorization(12345) is None

    def test_multiple_colons(self):
        """Everything after the first colon is the preimage."""
        result = parse_authorization("L402 mac:pre:extra:colons")
        assert result is not None
        assert result.voucher == "mac"
        assert result.preimage == "pre:extra:colons"


class TestIsL402Header:
    def test_detects_scheme(self):
        assert is_l402_header("L402 abc:def") is True
        assert is_l402_header("l402 malformed") is True

    def test_other_schemes(self):
        assert is_l402_header("Bearer abc") is False
        assert is_l402_header(None) is False
        assert is_l402_header("") is False
