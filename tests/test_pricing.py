from datetime import datetime, timedelta, timezone

from pricing import discount_value, final_price

NOW = datetime(2026, 3, 10, 9, 30, 0)


class TestFinalPrice:

    def test_no_discount(self):
        assert final_price(100, None, NOW) == 100

    def test_percentage_discount(self):
        discount = {"type": "percentage", "value": 20, "expiresAt": NOW + timedelta(days=1)}
        assert final_price(100, discount, NOW) == 80

    def test_flat_discount(self):
        discount = {"type": "flat", "value": 15, "expiresAt": NOW + timedelta(days=1)}
        assert final_price(100, discount, NOW) == 85

    def test_expired_discount_is_ignored(self):
        discount = {"type": "percentage", "value": 20, "expiresAt": NOW - timedelta(seconds=1)}
        assert final_price(100, discount, NOW) == 100

    def test_discount_expiring_now_is_ignored(self):
        discount = {"type": "flat", "value": 15, "expiresAt": NOW}
        assert final_price(100, discount, NOW) == 100

    def test_price_never_negative(self):
        discount = {"type": "flat", "value": 150, "expiresAt": NOW + timedelta(days=1)}
        assert final_price(100, discount, NOW) == 0

    def test_rounded_to_cents(self):
        discount = {"type": "percentage", "value": 33, "expiresAt": NOW + timedelta(days=1)}
        assert final_price(9.99, discount, NOW) == 6.69

    def test_aware_expiry_compared_as_utc(self):
        expires = (NOW + timedelta(hours=1)).replace(tzinfo=timezone.utc)
        assert discount_value({"type": "flat", "value": 5, "expiresAt": expires}, NOW) == 5
