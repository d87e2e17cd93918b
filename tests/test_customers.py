from datetime import datetime, timedelta

import pytest
from pymongo.errors import PyMongoError

import access_keys
import customers
import ledger
import notifications
import payments
from database import CUSTOMERS, ORDERS
from errors import AuthenticationError, ConflictError, NotFound
from schemas import CustomerIn, CustomerUpdateIn, PaymentIn

NOW = datetime(2026, 3, 10, 9, 30, 0)


class TestRegisterCustomer:

    def test_register(self, db, sink):
        payload = CustomerIn(name="Nusrat Jahan", phone="01712345678", address="Dhanmondi 27")
        result = customers.register_customer(db, payload, now=NOW)

        assert result.ok, result.error
        customer = result.data["customer"]
        assert customer["balance"] == 0
        assert customer["paymentStatus"] == ledger.PAID
        assert "accessKey" not in customer

        token = result.data["accessKey"]
        stored = db[CUSTOMERS].find_one({"_id": customer["_id"]})
        assert stored["accessKey"] == access_keys.hash_key(token)
        assert stored["accessKey"] != token

        [sent] = sink.sent
        assert sent.event == notifications.ACCOUNT_CREATED
        assert sent.recipient == "01712345678"
        assert sent.data["link"].endswith(f"?key={token}")

    def test_phone_must_be_unique(self, db, make_customer):
        make_customer(phone="01712345678")
        result = customers.register_customer(
            db, CustomerIn(name="Someone", phone="01712345678", address="x"), now=NOW,
        )
        assert isinstance(result.error, ConflictError)
        assert result.error.fields[0]["name"] == "phone"

    def test_update_phone_conflict(self, db, make_customer):
        make_customer(phone="01712345678")
        other = make_customer()
        result = customers.update_customer(db, str(other["_id"]), CustomerUpdateIn(phone="01712345678"), now=NOW)
        assert isinstance(result.error, ConflictError)

    def test_update(self, db, make_customer):
        c = make_customer()
        result = customers.update_customer(db, str(c["_id"]), CustomerUpdateIn(address="Uttara 4"), now=NOW)
        assert result.data["address"] == "Uttara 4"
        assert "accessKey" not in result.data


class TestDeleteCustomer:

    def test_unreferenced_customer(self, db, make_customer):
        c = make_customer()
        assert customers.delete_customer(db, str(c["_id"])).ok
        assert isinstance(customers.get_customer(db, str(c["_id"])).error, NotFound)

    def test_referenced_customer_is_kept(self, db, make_customer):
        c = make_customer()
        db[ORDERS].insert_one({"customer": c["_id"], "amount": 10.0, "status": "pending"})
        result = customers.delete_customer(db, str(c["_id"]))
        assert isinstance(result.error, ConflictError)
        assert [f["name"] for f in result.error.fields] == ["orders"]
        assert db[CUSTOMERS].count_documents({"_id": c["_id"]}) == 1


class TestAccessKeys:

    def test_authenticate(self, db, make_customer):
        c = make_customer()
        token = access_keys.issue_access_key(db, c["_id"], ttl_minutes=60, now=NOW)
        assert access_keys.authenticate(db, token, NOW + timedelta(minutes=59))["_id"] == c["_id"]

    def test_expired(self, db, make_customer):
        c = make_customer()
        token = access_keys.issue_access_key(db, c["_id"], ttl_minutes=60, now=NOW)
        with pytest.raises(AuthenticationError):
            access_keys.authenticate(db, token, NOW + timedelta(minutes=60))

    def test_new_key_replaces_old(self, db, make_customer):
        c = make_customer()
        old = access_keys.issue_access_key(db, c["_id"], now=NOW)
        new = customers.regenerate_access_key(db, str(c["_id"]), now=NOW).data["accessKey"]
        assert old != new
        with pytest.raises(AuthenticationError):
            access_keys.authenticate(db, old, NOW)
        assert access_keys.authenticate(db, new, NOW)["_id"] == c["_id"]

    @pytest.mark.parametrize("token", [None, "", "abc", "Z" * 64])
    def test_bad_format(self, db, token):
        with pytest.raises(AuthenticationError) as exc:
            access_keys.authenticate(db, token, NOW)
        assert exc.value.fields[0]["name"] == "key"

    def test_unknown_customer(self, db):
        from bson.objectid import ObjectId
        with pytest.raises(NotFound):
            access_keys.issue_access_key(db, ObjectId(), now=NOW)


class TestCustomerAccess:

    def test_history_view(self, db, make_customer):
        c = make_customer()
        token = access_keys.issue_access_key(db, c["_id"], now=NOW)
        for amount in (10, 20, 30):
            payments.register_payment(
                db, PaymentIn(customerId=str(c["_id"]), amount=amount, method="cash", cashReceivedBy="Desk"), now=NOW,
            )

        result = customers.customer_access(db, token, p_page=2, limit=2, now=NOW)
        assert result.ok, result.error
        view = result.data
        assert view["self"]["_id"] == c["_id"]
        assert "accessKey" not in view["self"]
        assert view["orders"]["pagination"]["total"] == 0
        assert view["payments"]["pagination"] == {"page": 2, "limit": 2, "total": 3, "totalPages": 2, "prevPage": 1}
        assert len(view["payments"]["data"]) == 1

    def test_rejected_key(self, db):
        result = customers.customer_access(db, "0" * 64, now=NOW)
        assert isinstance(result.error, AuthenticationError)
        assert result.error.status_code == 401


class TestReminderAndAudit:

    def test_payment_reminder(self, db, make_customer, sink):
        c = make_customer()
        ledger.apply_order_delta(db, c["_id"], 75.5, NOW)
        result = customers.send_payment_reminder(db, str(c["_id"]), now=NOW)

        assert result.ok, result.error
        assert result.data["event"] == notifications.PAYMENT_REMINDER
        assert result.data["data"]["outstanding"] == 75.5
        token = result.data["data"]["link"].split("key=")[1]
        assert access_keys.authenticate(db, token, NOW)["_id"] == c["_id"]
        assert sink.sent[-1].event == notifications.PAYMENT_REMINDER

    def test_broken_sink_does_not_fail_the_operation(self, db, make_customer):
        class Broken:
            def send(self, notification):
                raise RuntimeError("gateway down")

        c = make_customer()
        notifications.set_sink(Broken())
        assert customers.send_payment_reminder(db, str(c["_id"]), now=NOW).ok

    def test_audit_and_repair(self, db, make_customer):
        c = make_customer()
        db[CUSTOMERS].update_one({"_id": c["_id"]}, {"$set": {"balance": 42.0}})

        report = customers.audit_customer(db, str(c["_id"])).data
        assert report["drift"] == 42
        assert not report["consistent"]

        repaired = customers.audit_customer(db, str(c["_id"]), repair=True, now=NOW).data
        assert repaired["consistent"]
        assert repaired["recorded"] == 0

    def test_drift_report(self, db, make_customer):
        c = make_customer()
        assert customers.balance_drift(db).data == []
        db[CUSTOMERS].update_one({"_id": c["_id"]}, {"$set": {"balance": 9.5}})
        [report] = customers.balance_drift(db).data
        assert report["customer"] == c["_id"]

    def test_drift_report_storage_failure(self, db, monkeypatch):
        def broken(*args, **kwargs):
            raise PyMongoError("not primary")

        monkeypatch.setattr(ledger, "find_drift", broken)
        assert customers.balance_drift(db).kind == "internal_error"
