import logging

from ledgersync.app.billing import NewInvoiceNotification, NotificationChannel


def _notification() -> NewInvoiceNotification:
    return NewInvoiceNotification(
        tenant_id="tenant-1",
        invoice_id="inv-1",
        billing_invoice_id="in_1",
        user_id="alice",
        email="alice@example.com",
        dashboard_url="https://app.test/tenants/tenant-1",
        invoices_url="https://app.test/tenants/tenant-1/invoices",
        download_url="https://app.test/tenants/tenant-1/invoices/inv-1/download",
    )


class ExplodingNotifier:
    def notify_new_invoice(self, notification):
        raise ConnectionError("smtp unavailable")


def test_inline_channel_delivers(notifier):
    channel = NotificationChannel(notifier, background=False)

    channel.dispatch(_notification())

    assert [item.invoice_id for item in notifier.notifications] == ["inv-1"]


def test_delivery_failures_are_logged_not_raised(caplog):
    channel = NotificationChannel(ExplodingNotifier(), background=False)

    with caplog.at_level(logging.WARNING):
        channel.dispatch(_notification())

    assert "could not be delivered" in caplog.text


def test_background_channel_delivers_on_thread(notifier, monkeypatch):
    started = []

    class InlineThread:
        def __init__(self, target, args, daemon):
            self.target = target
            self.args = args
            started.append(daemon)

        def start(self):
            self.target(*self.args)

    monkeypatch.setattr("ledgersync.app.billing.notifications.Thread", InlineThread)
    channel = NotificationChannel(notifier)

    channel.dispatch(_notification())

    assert started == [True]
    assert len(notifier.notifications) == 1
