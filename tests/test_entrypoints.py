import pytest

from ridepay.errors import BillNotFoundError, PayloadValidationError, TransportError
from ridepay.models.bill import BillStatus, Outcome
from ridepay.services.entrypoints import PaymentEntryPoints, parse_callback
from ridepay.services.gateway import VerificationResult


@pytest.fixture
def entrypoints(store, engine, gateway):
    return PaymentEntryPoints(engine, gateway, store.bills, webhook_hash="s3cret")


def _verified(external_ref, outcome):
    return VerificationResult(external_ref, outcome, 10000, "RWF", {"data": {"tx_ref": external_ref}})


class TestParseCallback:
    def test_webhook_envelope(self):
        payload = {"event": "charge.completed", "data": {"tx_ref": "TX1", "status": "successful"}}
        assert parse_callback(payload) == ("TX1", Outcome.SUCCESS)

    def test_flat_body(self):
        assert parse_callback({"txRef": "TX1", "status": "failed"}) == ("TX1", Outcome.FAILURE)

    def test_missing_reference(self):
        with pytest.raises(PayloadValidationError):
            parse_callback({"data": {"status": "successful"}})

    def test_not_an_object(self):
        with pytest.raises(PayloadValidationError):
            parse_callback(["TX1"])


class TestCallback:
    @pytest.mark.asyncio
    async def test_successful_callback_activates(self, store, entrypoints, make_payment):
        user_id = await make_payment("TX1")
        payload = {"event": "charge.completed", "data": {"tx_ref": "TX1", "status": "successful"}}

        result = await entrypoints.handle_callback(payload, signature="s3cret")

        assert result.ok is True
        assert result.resolution.activated is True
        bill = await store.bills.get_by_ref("TX1")
        assert bill.callback_snapshot == payload
        user = await store.users.get_by_id(user_id)
        assert user.subscription.status == "active"

    @pytest.mark.asyncio
    async def test_replayed_callback_is_acknowledged(self, store, entrypoints, make_payment):
        user_id = await make_payment("TX1")
        payload = {"data": {"tx_ref": "TX1", "status": "successful"}}
        await entrypoints.handle_callback(payload, signature="s3cret")

        result = await entrypoints.handle_callback(payload, signature="s3cret")

        assert result.ok is True
        assert result.resolution.activated is False
        assert await store.activity.count(user_id, "subscription_activated") == 1

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, store, entrypoints, make_payment):
        await make_payment("TX1")

        result = await entrypoints.handle_callback(
            {"data": {"tx_ref": "TX1", "status": "successful"}}, signature="wrong"
        )

        assert result.ok is False
        bill = await store.bills.get_by_ref("TX1")
        assert bill.status is BillStatus.INITIATED

    @pytest.mark.asyncio
    async def test_malformed_callback_changes_nothing(self, store, entrypoints, make_payment):
        await make_payment("TX1")

        result = await entrypoints.handle_callback({"data": {"status": "successful"}}, signature="s3cret")

        assert result.ok is False
        bill = await store.bills.get_by_ref("TX1")
        assert bill.status is BillStatus.INITIATED

    @pytest.mark.asyncio
    async def test_unknown_reference_raises(self, entrypoints):
        with pytest.raises(BillNotFoundError):
            await entrypoints.handle_callback(
                {"data": {"tx_ref": "NOPE", "status": "successful"}}, signature="s3cret"
            )


class TestRedirect:
    @pytest.mark.asyncio
    async def test_advisory_status_is_not_trusted(self, store, entrypoints, gateway, make_payment):
        user_id = await make_payment("TX1")
        gateway.verify.return_value = [_verified("TX1", Outcome.FAILURE)]

        result = await entrypoints.handle_redirect("TX1", advisory_status="successful")

        gateway.verify.assert_awaited_once_with("TX1")
        assert result.outcome is Outcome.FAILURE
        bill = await store.bills.get_by_ref("TX1")
        assert bill.status is BillStatus.FAILED
        user = await store.users.get_by_id(user_id)
        assert user.subscription.status == "inactive"

    @pytest.mark.asyncio
    async def test_verified_success_activates(self, store, entrypoints, gateway, make_payment):
        await make_payment("TX1")
        gateway.verify.return_value = [_verified("TX1", Outcome.SUCCESS)]

        result = await entrypoints.handle_redirect("TX1", advisory_status="cancelled")

        assert result.ok is True
        assert result.resolution.activated is True

    @pytest.mark.asyncio
    async def test_provider_timeout_leaves_bill_open(self, store, entrypoints, gateway, make_payment):
        await make_payment("TX1")
        gateway.verify.side_effect = TransportError("Payment provider timeout")

        result = await entrypoints.handle_redirect("TX1", advisory_status="successful")

        assert result.ok is False
        assert result.outcome is Outcome.AMBIGUOUS
        bill = await store.bills.get_by_ref("TX1")
        assert bill.status is BillStatus.INITIATED

    @pytest.mark.asyncio
    async def test_provider_without_record_leaves_bill_open(self, store, entrypoints, gateway, make_payment):
        await make_payment("TX1")

        result = await entrypoints.handle_redirect("TX1", advisory_status=None)

        assert result.ok is True
        assert result.outcome is Outcome.AMBIGUOUS
        bill = await store.bills.get_by_ref("TX1")
        assert bill.done is False

    @pytest.mark.asyncio
    async def test_unknown_reference_skips_provider(self, entrypoints, gateway):
        with pytest.raises(BillNotFoundError):
            await entrypoints.handle_redirect("NOPE", advisory_status="successful")
        gateway.verify.assert_not_awaited()


class TestManualVerify:
    @pytest.mark.asyncio
    async def test_manual_verify_resolves_bill(self, store, entrypoints, gateway, make_payment):
        await make_payment("TX1")
        gateway.verify.return_value = [_verified("TX1", Outcome.SUCCESS)]

        result = await entrypoints.manual_verify("TX1")

        assert result.ok is True
        assert result.resolution.bill.status is BillStatus.COMPLETED
        assert result.resolution.activated is True

    @pytest.mark.asyncio
    async def test_manual_verify_finishes_stalled_activation(self, store, entrypoints, gateway, make_payment):
        user_id = await make_payment("TX1")
        await store.bills.transition("TX1", BillStatus.COMPLETED)
        gateway.verify.return_value = [_verified("TX1", Outcome.SUCCESS)]

        result = await entrypoints.manual_verify("TX1")

        assert result.resolution.activated is True
        assert result.resolution.bill.activation_applied is True
        user = await store.users.get_by_id(user_id)
        assert user.subscription.status == "active"
