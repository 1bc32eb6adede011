"""
Notification templates and the store-then-dispatch notification system.
"""

import pytest

from notification_system import (
    NOTIFICATION_TEMPLATES,
    NotificationChannel,
    NotificationSystem,
    NotificationType,
    render_template,
)


class FlakySmsNotificationSystem(NotificationSystem):
    async def _deliver(self, channel, user_id, doc):
        if channel == NotificationChannel.SMS:
            raise ConnectionError("sms gateway timeout")
        return await super()._deliver(channel, user_id, doc)


class TestTemplates:

    def test_render(self):
        rendered = render_template("installation_scheduled", {"installation_date": "05 Mar 2025"})
        assert rendered == {
            "title": "Installation Date Scheduled",
            "message": "Your installation has been scheduled for 05 Mar 2025.",
        }

    def test_unknown_template(self):
        with pytest.raises(ValueError, match="Unknown notification template"):
            render_template("order_shipped", {})

    def test_missing_variable(self):
        with pytest.raises(ValueError, match="product_name"):
            render_template("order_created", {})

    def test_every_template_has_title_and_message(self):
        for key, template in NOTIFICATION_TEMPLATES.items():
            assert set(template) == {"title", "message"}, key


class TestNotificationSystem:

    async def test_send_stores_and_dispatches(self, db):
        system = NotificationSystem(db)
        doc = await system.send(
            "cust-north", "Payment Successful", "Received.", NotificationType.PAYMENT_SUCCESS,
            ["push", "email"], "o-1", "order"
        )

        assert doc["type"] == "payment_success"
        assert doc["channels"] == ["push", "email"]
        assert doc["read"] is False
        assert doc["_id"] == "oid-1"
        stored = db.notifications[doc["notification_id"]]
        assert stored["related_entity_id"] == "o-1"
        assert stored["delivery_status"] == {
            "sent_all": True,
            "channels": {"push": "queued", "email": "queued"},
        }

    async def test_default_channels(self, db):
        doc = await NotificationSystem(db).send("cust-north", "t", "b", "status_update")
        assert doc["channels"] == ["push", "email"]

    async def test_unknown_channels_skipped(self, db):
        doc = await NotificationSystem(db).send("cust-north", "t", "b", "status_update", ["fax", "SMS", "sms"])
        assert doc["channels"] == ["sms"]

    async def test_channel_failure_isolated(self, db):
        doc = await FlakySmsNotificationSystem(db).send(
            "cust-north", "t", "b", NotificationType.STATUS_UPDATE, ["push", "sms", "email"]
        )
        status = db.notifications[doc["notification_id"]]["delivery_status"]
        assert status["sent_all"] is False
        assert status["channels"]["push"] == "queued"
        assert status["channels"]["email"] == "queued"
        assert status["channels"]["sms"].startswith("failed: ")

    async def test_storage_failure_returns_none(self, db):
        db.fail_on["insert_notification"] = RuntimeError("mongo unavailable")
        assert await NotificationSystem(db).send("cust-north", "t", "b", "status_update") is None

    async def test_invalid_type_returns_none(self, db):
        assert await NotificationSystem(db).send("cust-north", "t", "b", "carrier_pigeon") is None
        assert db.notifications == {}
