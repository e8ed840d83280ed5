"""
Notification transport.

Only the call contracts matter to the signing workflow; message bodies are
kept short and plain. ``SMTPNotifier`` delivers over SMTP, ``LoggingNotifier``
writes every message to the log instead (used when no SMTP host is set).
"""
import logging
import smtplib
from email.message import EmailMessage

from ..config import Settings

logger = logging.getLogger(__name__)


class Notifier:
    """Builds the messages; subclasses implement :meth:`deliver`."""

    def deliver(self, to: str, subject: str, body: str):
        raise NotImplementedError

    def signing_request(self, to, document_name, sender_email, sign_link):
        self.deliver(
            to,
            f'{sender_email} has requested your signature on "{document_name}"',
            f"Review and sign the document here:\n\n{sign_link}\n\n"
            "You will be asked for a one-time code sent to this address.",
        )

    def queue_notice(self, to, document_name, sender_email, current_signer_email, position, total):
        self.deliver(
            to,
            f'You are #{position} in queue to sign "{document_name}"',
            f"{sender_email} sent \"{document_name}\" for signature by {total} people.\n"
            f"{current_signer_email} is signing now. You are #{position} of {total}; "
            "we will email you a link when it is your turn.",
        )

    def your_turn(self, to, document_name, previous_signer_email, sign_link, position, total):
        self.deliver(
            to,
            f'It is your turn to sign "{document_name}"',
            f"{previous_signer_email} has signed. You are signer #{position} of {total}.\n\n"
            f"Sign here:\n\n{sign_link}",
        )

    def progress_update(self, to, document_name, previous_signer_email, next_signer_email, remaining):
        self.deliver(
            to,
            f'Progress on "{document_name}"',
            f"{previous_signer_email} has signed; {next_signer_email} is next. "
            f"{remaining} signature(s) remaining.",
        )

    def completion(self, to, document_name, signers, download_url):
        lines = "\n".join(f"  {s['email']} - {s['signed_at']}" for s in signers)
        self.deliver(
            to,
            f'"{document_name}" has been signed by everyone',
            f"All signatures are in:\n{lines}\n\nDownload the signed document:\n\n{download_url}",
        )

    def declined(self, to, document_name, signer_email, declined_at):
        self.deliver(
            to,
            f'{signer_email} declined to sign "{document_name}"',
            f"{signer_email} declined at {declined_at}. The document has been cancelled.",
        )

    def otp_code(self, to, document_name, code, expires_minutes=10):
        self.deliver(
            to,
            f'Your verification code for "{document_name}"',
            f"Your one-time code is {code}. It expires in {expires_minutes} minutes.",
        )


class LoggingNotifier(Notifier):
    def deliver(self, to, subject, body):
        logger.info("EMAIL to %s: %s\n%s", to, subject, body)


class SMTPNotifier(Notifier):
    def __init__(self, host, port, user=None, password=None, sender="no-reply@localhost"):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def deliver(self, to, subject, body):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
            logger.info("Email sent to %s", to)
        except Exception as e:
            logger.error("Failed to send email to %s: %s", to, e)
            raise


def build_notifier(settings: Settings) -> Notifier:
    if settings.SMTP_HOST:
        return SMTPNotifier(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            settings.SMTP_FROM,
        )
    return LoggingNotifier()
