"""Identifier generator tests"""

import random
import re

import pytest

from orders.errors import ExhaustedIdentifierSpace
from orders.identifiers import CODE_MAX, CODE_MIN, IdentifierGenerator
from orders.models import Order, PayMethod, PrintOptions, RedemptionCode, TrackingId
from storage import InMemoryOrderStore


class TakenStore(InMemoryOrderStore):
    """Treats a fixed set of values as in use"""

    def __init__(self, taken):
        super().__init__()
        self.taken = set(taken)
        self.checked = []

    async def exists(self, identifier):
        self.checked.append(identifier)
        return identifier in self.taken


class FullStore(TakenStore):
    async def exists(self, identifier):
        self.checked.append(identifier)
        return True


class TestRedemptionCodes:

    async def test_codes_are_six_digits_in_range(self, store):
        generator = IdentifierGenerator(store)
        for _ in range(200):
            code = await generator.next_redemption_code()
            assert re.fullmatch(r"\d{6}", code)
            assert CODE_MIN <= int(code) <= CODE_MAX

    async def test_skips_codes_in_use(self):
        rng = random.Random(7)
        first_two = [str(rng.randint(CODE_MIN, CODE_MAX)) for _ in range(2)]

        store = TakenStore(taken=[first_two[0]])
        generator = IdentifierGenerator(store, rng=random.Random(7))

        code = await generator.next_redemption_code()

        assert code == first_two[1]
        assert store.checked == first_two

    async def test_reserved_codes_count_as_taken(self, store):
        pending = Order(
            identifier=TrackingId(value="cf_1"),
            pay_method=PayMethod.PREPAID,
            tracking_id="cf_1",
            options=PrintOptions(),
            price=1,
        )
        await store.save(pending)
        await store.reserve_redemption_code("cf_1", "555555")

        assert await store.exists("555555")

    async def test_gives_up_after_max_attempts(self):
        store = FullStore(taken=[])
        generator = IdentifierGenerator(store, max_attempts=10)

        with pytest.raises(ExhaustedIdentifierSpace) as exc_info:
            await generator.next_redemption_code()

        assert exc_info.value.attempts == 10
        assert len(store.checked) == 10

    async def test_generated_codes_validate_as_redemption_codes(self, store):
        code = await IdentifierGenerator(store).next_redemption_code()
        assert RedemptionCode(value=code).value == code


class TestTrackingIds:

    def test_prefix_timestamp_and_suffix(self, store):
        tracking_id = IdentifierGenerator(store).next_tracking_id()
        assert re.fullmatch(r"cf_\d{13}[0-9a-z]{6}", tracking_id)

    def test_custom_prefix(self, store):
        tracking_id = IdentifierGenerator(store, tracking_prefix="pd_").next_tracking_id()
        assert tracking_id.startswith("pd_")

    def test_consecutive_ids_differ(self, store):
        generator = IdentifierGenerator(store)
        ids = {generator.next_tracking_id() for _ in range(100)}
        assert len(ids) == 100

    def test_tracking_ids_fit_the_identifier_model(self, store):
        tracking_id = IdentifierGenerator(store).next_tracking_id()
        assert TrackingId(value=tracking_id).kind == "tracking"
