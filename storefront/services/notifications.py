"""
Receipt Notifications - Purchase receipt email.

Receipts are sent off the request path. A failed send is logged and
never affects the purchase that triggered it.
"""

import asyncio
import smtplib
from email.message import EmailMessage

from jinja2 import DictLoader, Environment, select_autoescape
from structlog import get_logger

from storefront.models.domain import Transaction

logger = get_logger(__name__)

_SHOP_RECEIPT = """\
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #222;">
  <h2>Thank you for your purchase, {{ transaction.payer.first_name }}!</h2>
  <p>Your order has been confirmed.</p>
  <table cellpadding="4">
    <tr><td><strong>Product</strong></td><td>{{ transaction.product.name }}</td></tr>
    <tr><td><strong>Price</strong></td><td>${{ transaction.product.price }}</td></tr>
    <tr><td><strong>Transaction ID</strong></td><td>{{ transaction.id }}</td></tr>
    <tr><td><strong>Order ID</strong></td><td>{{ transaction.order_id }}</td></tr>
    <tr><td><strong>Date</strong></td><td>{{ transaction.purchase_date.strftime("%Y-%m-%d %H:%M UTC") }}</td></tr>
  </table>
  <p>
    Need to download it again? Visit <a href="{{ redownload_url }}">{{ redownload_url }}</a>
    and enter your Transaction ID or purchase email.
  </p>
  <p style="font-size: 12px; color: #888;">{{ site_title }}{% if footer_domain %} - {{ footer_domain }}{% endif %}</p>
</body>
</html>
"""

_SINGLE_RECEIPT = """\
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #222;">
  <h2>Thank you, {{ transaction.payer.first_name }}!</h2>
  <p>Your purchase of <strong>{{ product_name }}</strong> (${{ product_price }}) is complete.</p>
  <p>Transaction ID: <strong>{{ transaction.id }}</strong></p>
  <p>
    Keep this email. You can download your file again at
    <a href="{{ redownload_url }}">{{ redownload_url }}</a>.
  </p>
  <p style="font-size: 12px; color: #888;">{{ site_title }}{% if footer_domain %} - {{ footer_domain }}{% endif %}</p>
</body>
</html>
"""

_templates = Environment(
    loader=DictLoader(
        {
            "shop/purchase-receipt.html": _SHOP_RECEIPT,
            "single/purchase-receipt.html": _SINGLE_RECEIPT,
        }
    ),
    autoescape=select_autoescape(default=True),
)


class ReceiptNotifier:
    """
    Renders and sends purchase receipts over SMTP or a local sendmail binary.
    """

    def __init__(
        self,
        mode: str,
        sender: str,
        subject: str,
        enabled: bool = True,
        use_sendmail: bool = False,
        sendmail_path: str = "/usr/sbin/sendmail",
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        site_title: str = "",
        footer_domain: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.mode = mode
        self.sender = sender
        self.subject = subject
        self.enabled = enabled
        self.use_sendmail = use_sendmail
        self.sendmail_path = sendmail_path
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.site_title = site_title
        self.footer_domain = footer_domain
        self.timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    def render(self, transaction: Transaction, redownload_url: str) -> str:
        """Render the receipt body for the configured mode."""
        template = _templates.get_template(f"{self.mode}/purchase-receipt.html")
        return template.render(
            transaction=transaction,
            product_name=transaction.product.name,
            product_price=transaction.product.price,
            redownload_url=redownload_url,
            site_title=self.site_title,
            footer_domain=self.footer_domain,
        )

    def build_message(self, transaction: Transaction, redownload_url: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = transaction.payer.email
        message["Subject"] = self.subject
        message.set_content(
            f"Thank you for your purchase.\n"
            f"Transaction ID: {transaction.id}\n"
            f"Download again: {redownload_url}\n"
        )
        message.add_alternative(self.render(transaction, redownload_url), subtype="html")
        return message

    async def send_receipt(self, transaction: Transaction, redownload_url: str) -> None:
        """
        Send the receipt for a recorded transaction.

        Raises:
            OSError: If the SMTP server or sendmail binary fails
            smtplib.SMTPException: If the SMTP server rejects the message
        """
        if not self.enabled or not self.sender:
            logger.info("receipt_email_disabled", transaction_id=transaction.id)
            return

        message = self.build_message(transaction, redownload_url)
        if self.use_sendmail:
            await self._send_with_sendmail(message)
        else:
            await asyncio.to_thread(self._send_with_smtp, message)

        logger.info(
            "receipt_email_sent",
            transaction_id=transaction.id,
            recipient=transaction.payer.email,
        )

    def dispatch(self, transaction: Transaction, redownload_url: str) -> asyncio.Task[None]:
        """Schedule send_receipt in the background and return its task."""
        task = asyncio.create_task(self._send_logged(transaction, redownload_url))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for receipts still in flight (for graceful shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _send_logged(self, transaction: Transaction, redownload_url: str) -> None:
        try:
            await self.send_receipt(transaction, redownload_url)
        except Exception as exc:
            # Background task: nothing awaits it, so every failure stops here
            logger.error(
                "receipt_email_failed",
                transaction_id=transaction.id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    def _send_with_smtp(self, message: EmailMessage) -> None:
        if self.smtp_port == 465:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
            ) as smtp:
                self._login_and_send(smtp, message)
        else:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as smtp:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
                self._login_and_send(smtp, message)

    def _login_and_send(self, smtp: smtplib.SMTP, message: EmailMessage) -> None:
        if self.smtp_user:
            smtp.login(self.smtp_user, self.smtp_password)
        smtp.send_message(message)

    async def _send_with_sendmail(self, message: EmailMessage) -> None:
        process = await asyncio.create_subprocess_exec(
            self.sendmail_path,
            "-i",
            "-t",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(message.as_bytes()), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise OSError(f"sendmail timed out after {self.timeout_seconds}s") from exc
        if process.returncode != 0:
            raise OSError(
                f"sendmail exited with {process.returncode}: "
                f"{stderr.decode('utf-8', 'replace').strip()}"
            )
