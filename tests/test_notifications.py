"""
Tests for receipt rendering and delivery.
"""

import asyncio
import smtplib
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from storefront.models.domain import Payer, ProductSnapshot, Transaction
from storefront.services.notifications import ReceiptNotifier

TRANSACTION = Transaction(
    id="CAPTURE-1",
    order_id="ORDER-1",
    purchase_date=datetime(2025, 1, 8, 12, 0, tzinfo=UTC),
    product=ProductSnapshot(id="A", name="Brutal <UI> Kit", price="49.00"),
    payer=Payer(email="buyer@example.com", first_name="Ada", last_name="Lovelace"),
)

REDOWNLOAD_URL = "https://shop.example.com/redownload"


def make_notifier(**overrides) -> ReceiptNotifier:
    values = {
        "mode": "shop",
        "sender": "shop@example.com",
        "subject": "Your purchase receipt",
        "footer_domain": "shop.example.com",
    }
    values.update(overrides)
    return ReceiptNotifier(**values)


class TestRender:
    """Tests for receipt templates."""

    def test_shop_receipt_contains_transaction_details(self):
        html = make_notifier().render(TRANSACTION, REDOWNLOAD_URL)

        assert "CAPTURE-1" in html
        assert "ORDER-1" in html
        assert "$49.00" in html
        assert REDOWNLOAD_URL in html
        assert "shop.example.com" in html

    def test_product_name_is_escaped(self):
        html = make_notifier().render(TRANSACTION, REDOWNLOAD_URL)
        assert "Brutal &lt;UI&gt; Kit" in html

    def test_site_title_in_footer(self):
        html = make_notifier(site_title="Brutal Goods").render(TRANSACTION, REDOWNLOAD_URL)
        assert "Brutal Goods - shop.example.com" in html

    def test_single_receipt(self):
        html = make_notifier(mode="single").render(TRANSACTION, REDOWNLOAD_URL)
        assert "Your purchase of" in html
        assert "CAPTURE-1" in html

    def test_message_headers(self):
        message = make_notifier().build_message(TRANSACTION, REDOWNLOAD_URL)

        assert message["To"] == "buyer@example.com"
        assert message["From"] == "shop@example.com"
        assert message["Subject"] == "Your purchase receipt"


class TestSend:
    """Tests for delivery transports."""

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self):
        notifier = make_notifier(enabled=False)

        with patch("storefront.services.notifications.smtplib.SMTP") as mock_smtp:
            await notifier.send_receipt(TRANSACTION, REDOWNLOAD_URL)

        mock_smtp.assert_not_called()

    @pytest.mark.asyncio
    async def test_smtp_login_and_send(self):
        notifier = make_notifier(smtp_host="mail.example.com", smtp_user="u", smtp_password="p")

        with patch("storefront.services.notifications.smtplib.SMTP") as mock_smtp:
            smtp = mock_smtp.return_value.__enter__.return_value
            smtp.has_extn.return_value = True
            await notifier.send_receipt(TRANSACTION, REDOWNLOAD_URL)

        mock_smtp.assert_called_once_with("mail.example.com", 587, timeout=30.0)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("u", "p")
        smtp.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_port_465_uses_ssl(self):
        notifier = make_notifier(smtp_port=465)

        with patch("storefront.services.notifications.smtplib.SMTP_SSL") as mock_ssl:
            await notifier.send_receipt(TRANSACTION, REDOWNLOAD_URL)

        mock_ssl.assert_called_once()

    @pytest.mark.asyncio
    async def test_sendmail_failure_raises(self):
        notifier = make_notifier(use_sendmail=True, sendmail_path="/usr/sbin/sendmail")
        process = MagicMock()
        process.communicate = AsyncMock(return_value=(b"", b"no such user"))
        process.returncode = 1

        with patch(
            "storefront.services.notifications.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(OSError, match="no such user"):
                await notifier.send_receipt(TRANSACTION, REDOWNLOAD_URL)

    @pytest.mark.asyncio
    async def test_dispatch_swallows_delivery_failure(self):
        """A failing receipt is logged and never propagates."""
        notifier = make_notifier()

        with patch("storefront.services.notifications.smtplib.SMTP") as mock_smtp:
            mock_smtp.side_effect = smtplib.SMTPConnectError(421, "unavailable")
            with patch("storefront.services.notifications.logger") as mock_logger:
                task = notifier.dispatch(TRANSACTION, REDOWNLOAD_URL)
                await asyncio.wait_for(task, timeout=5)

        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.args[0] == "receipt_email_failed"

    @pytest.mark.asyncio
    async def test_drain_waits_for_pending(self):
        notifier = make_notifier(enabled=False)
        notifier.dispatch(TRANSACTION, REDOWNLOAD_URL)

        await notifier.drain()

        assert not notifier._pending

    @pytest.mark.asyncio
    async def test_sendmail_timeout_kills_child(self, tmp_path):
        """A hung sendmail is killed and reaped, and reported as OSError."""
        script = tmp_path / "sendmail"
        script.write_text("#!/bin/sh\nsleep 30\n")
        script.chmod(0o755)
        notifier = make_notifier(
            use_sendmail=True, sendmail_path=str(script), timeout_seconds=0.5
        )
        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def spawn(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            spawned.append(process)
            return process

        with patch("storefront.services.notifications.asyncio.create_subprocess_exec", spawn):
            with pytest.raises(OSError, match="timed out"):
                await notifier.send_receipt(TRANSACTION, REDOWNLOAD_URL)

        assert len(spawned) == 1
        assert spawned[0].returncode is not None

    @pytest.mark.asyncio
    async def test_dispatch_logs_unexpected_errors(self):
        """Errors outside OSError/SMTPException are still logged, not leaked."""
        notifier = make_notifier(smtp_user="u", smtp_password="pässwort")

        with patch("storefront.services.notifications.smtplib.SMTP") as mock_smtp:
            smtp = mock_smtp.return_value.__enter__.return_value
            smtp.has_extn.return_value = False
            smtp.login.side_effect = UnicodeEncodeError("ascii", "pässwort", 1, 2, "bad")
            with patch("storefront.services.notifications.logger") as mock_logger:
                task = notifier.dispatch(TRANSACTION, REDOWNLOAD_URL)
                await asyncio.wait_for(task, timeout=5)

        assert task.exception() is None
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.args[0] == "receipt_email_failed"
        assert mock_logger.error.call_args.kwargs["error_type"] == "UnicodeEncodeError"
