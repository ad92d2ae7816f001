import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from ridepay.errors import InvalidPaymentRequest, PayloadValidationError, TransportError
from ridepay.models.bill import Outcome
from ridepay.services.gateway import (
    ChargeRequest,
    GatewayClient,
    ProviderResponse,
    VerificationResult,
    encrypt_payload,
    normalize_provider_status,
    parse_verification,
)
from ridepay.services.payment_methods import Card, CardDetails, MobileMoney

ENCRYPTION_KEY = "FLWSECK_TESTabcdef123456"


@pytest.fixture
def client():
    return GatewayClient("https://api.example.com/v3/", "FLWSECK_TEST-secret", ENCRYPTION_KEY)


@pytest.fixture
def charge_request():
    return ChargeRequest(
        external_ref="BILL-1-abc",
        amount=10000,
        currency="RWF",
        email="billing@example.com",
        phone="250788000000",
        customer_name="Alice",
        redirect_url="https://example.com/payments/callback",
    )


class TestStatusNormalization:
    @pytest.mark.parametrize("status", ["successful", "SUCCESS", " completed "])
    def test_success_words(self, status):
        assert normalize_provider_status(status) is Outcome.SUCCESS

    @pytest.mark.parametrize("status", ["failed", "cancelled", "canceled", "error"])
    def test_failure_words(self, status):
        assert normalize_provider_status(status) is Outcome.FAILURE

    @pytest.mark.parametrize("status", ["pending", "processing", "", None, 3])
    def test_everything_else_is_ambiguous(self, status):
        assert normalize_provider_status(status) is Outcome.AMBIGUOUS

    def test_address_verification_wins_over_status(self):
        assert normalize_provider_status("successful", "avs_noauth") is Outcome.AMBIGUOUS


class TestParseVerification:
    def test_reads_data_object(self):
        body = {
            "status": "success",
            "data": {"tx_ref": "TX1", "status": "successful", "amount": 10000, "currency": "RWF"},
        }

        result = parse_verification("TX1", body)

        assert result.external_ref == "TX1"
        assert result.outcome is Outcome.SUCCESS
        assert result.amount == 10000
        assert result.raw_payload is body

    def test_missing_data_is_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_verification("TX1", {"status": "error", "message": "boom"})


class TestEncryption:
    def test_output_is_block_aligned_base64(self):
        encrypted = encrypt_payload({"tx_ref": "TX1", "amount": 100}, ENCRYPTION_KEY)

        raw = base64.b64decode(encrypted)
        assert len(raw) % 8 == 0
        assert b"TX1" not in raw

    def test_key_must_be_24_characters(self):
        with pytest.raises(ValueError):
            encrypt_payload({"tx_ref": "TX1"}, "short")


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_one_returns_none_for_unknown_reference(self, client):
        with patch.object(client, "_request", AsyncMock(return_value=(400, {"status": "error", "message": "No transaction was found"}))):
            assert await client.verify_one("TX1") is None

    @pytest.mark.asyncio
    async def test_verify_one_queries_by_reference(self, client):
        body = {"status": "success", "data": {"tx_ref": "TX1", "status": "failed"}}
        request = AsyncMock(return_value=(200, body))
        with patch.object(client, "_request", request):
            result = await client.verify_one("TX1")

        assert result.outcome is Outcome.FAILURE
        request.assert_awaited_once_with(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": "TX1"}
        )

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ambiguous(self, client):
        with patch.object(client, "_request", AsyncMock(return_value=(200, {"status": "success"}))):
            result = await client.verify_one("TX1")

        assert result.outcome is Outcome.AMBIGUOUS
        assert result.raw_payload == {"status": "success"}

    @pytest.mark.asyncio
    async def test_batch_omits_unknown_references(self, client):
        async def fake_verify_one(external_ref):
            if external_ref == "TX2":
                return None
            if external_ref == "TX3":
                raise TransportError("timeout")
            return VerificationResult(external_ref, Outcome.SUCCESS, 100, "RWF", {})

        with patch.object(client, "verify_one", side_effect=fake_verify_one):
            results = await client.verify(["TX1", "TX2", "TX3"])

        assert [item.external_ref for item in results] == ["TX1"]

    @pytest.mark.asyncio
    async def test_batch_raises_when_provider_is_unreachable(self, client):
        with patch.object(client, "verify_one", AsyncMock(side_effect=TransportError("timeout"))):
            with pytest.raises(TransportError):
                await client.verify(["TX1", "TX2"])

    @pytest.mark.asyncio
    async def test_single_reference_is_accepted(self, client):
        result = VerificationResult("TX1", Outcome.SUCCESS, 100, "RWF", {})
        with patch.object(client, "verify_one", AsyncMock(return_value=result)):
            assert await client.verify("TX1") == [result]


class TestCharges:
    @pytest.mark.asyncio
    async def test_direct_charge_sends_encrypted_payload(self, client):
        body = {"status": "success", "meta": {"authorization": {"redirect": "https://pay.example.com/otp"}}}
        request = AsyncMock(return_value=(200, body))
        with patch.object(client, "_request", request):
            response = await client.direct_charge("mobile_money_rwanda", {"tx_ref": "TX1", "amount": 100})

        assert response.accepted is True
        assert response.link == "https://pay.example.com/otp"
        args, kwargs = request.await_args
        assert args == ("POST", "/charges")
        assert kwargs["params"] == {"type": "mobile_money_rwanda"}
        assert isinstance(kwargs["json"]["client"], str)
        assert "TX1" not in kwargs["json"]["client"]

    @pytest.mark.asyncio
    async def test_direct_charge_rejected(self, client):
        with patch.object(client, "_request", AsyncMock(return_value=(400, {"status": "error", "message": "Invalid"}))):
            response = await client.direct_charge("card", {"tx_ref": "TX1"})

        assert response.accepted is False
        assert response.payload["status_code"] == 400

    @pytest.mark.asyncio
    async def test_payment_link(self, client):
        body = {"status": "success", "data": {"link": "https://checkout.example.com/TX1"}}
        with patch.object(client, "_request", AsyncMock(return_value=(200, body))):
            response = await client.create_payment_link({"tx_ref": "TX1"})

        assert response.accepted is True
        assert response.link == "https://checkout.example.com/TX1"


class TestPaymentMethods:
    def test_mobile_money_requires_twelve_digits(self):
        MobileMoney(phone="250788000000").validate()
        with pytest.raises(InvalidPaymentRequest):
            MobileMoney(phone="0788000000").validate()

    def test_card_expiry_format(self):
        assert CardDetails("4111111111111111", "123", "09/32").expiry() == ("09", "2032")
        with pytest.raises(InvalidPaymentRequest):
            Card(details=CardDetails("4111111111111111", "123", "2032-09")).validate()

    def test_card_without_details_is_valid(self):
        Card().validate()

    @pytest.mark.asyncio
    async def test_mobile_money_uses_network_charge(self, charge_request):
        gateway = AsyncMock(spec=GatewayClient)
        gateway.direct_charge.return_value = ProviderResponse("BILL-1-abc", True)

        await MobileMoney(phone="250788111111").charge(gateway, charge_request)

        charge_type, payload = gateway.direct_charge.await_args.args
        assert charge_type == "mobile_money_rwanda"
        assert payload["tx_ref"] == "BILL-1-abc"
        assert payload["phone_number"] == "250788111111"

    @pytest.mark.asyncio
    async def test_card_without_details_uses_hosted_checkout(self, charge_request):
        gateway = AsyncMock(spec=GatewayClient)
        gateway.create_payment_link.return_value = ProviderResponse("BILL-1-abc", True, link="https://x")

        await Card().charge(gateway, charge_request)

        payload = gateway.create_payment_link.await_args.args[0]
        assert payload["redirect_url"] == "https://example.com/payments/callback"
        assert payload["customer"]["phonenumber"] == "250788000000"
        gateway.direct_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_card_with_details_charges_directly(self, charge_request):
        gateway = AsyncMock(spec=GatewayClient)
        gateway.direct_charge.return_value = ProviderResponse("BILL-1-abc", True)

        await Card(details=CardDetails("4111111111111111", "123", "09/32")).charge(gateway, charge_request)

        charge_type, payload = gateway.direct_charge.await_args.args
        assert charge_type == "card"
        assert payload["expiry_month"] == "09"
        assert payload["expiry_year"] == "2032"


class TestTransportMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            aiohttp.ClientPayloadError("Response payload is not completed"),
            aiohttp.ServerDisconnectedError(),
            asyncio.TimeoutError(),
        ],
    )
    async def test_client_errors_become_transport_errors(self, client, error):
        session = MagicMock()
        session.request.return_value.__aenter__ = AsyncMock(side_effect=error)
        session.request.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch.object(client, "_get_session", AsyncMock(return_value=session)):
            with pytest.raises(TransportError):
                await client._request("GET", "/transactions/verify_by_reference", retries=1)
