"""
Transactional email for the Monetary Catalyst API.

Messages are rendered from Jinja2 templates under templates/emails/ and
delivered over SMTP (SendGrid's relay by default). Delivery never happens on
the request thread: callers enqueue a message and a single background worker
drains the queue, logging any failure.

Usage:
    from catalyst.extensions import email_queue

    email_queue.enqueue(
        to="user@example.com",
        subject="Hello",
        template="emails/welcome.html",
        context={"name": "Jane"},
    )
"""

import logging
import queue
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import render_template

logger = logging.getLogger(__name__)


def _send_smtp(app, msg):
    """Deliver one message over SMTP. Failures are logged, never raised."""
    host = app.config.get("MAIL_SMTP_HOST", "smtp.sendgrid.net")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        logger.warning("Email not sent - MAIL_USERNAME or MAIL_PASSWORD not configured.")
        return False

    try:
        with smtplib.SMTP(host, port, timeout=30) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(username, password)
            server.send_message(msg)
        logger.info(f"Email sent to {msg['To']} - {msg['Subject']}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {msg['To']}: {e}")
        return False


class EmailQueue:
    """Background email dispatcher bound to the app like any other extension.

    enqueue() renders and builds the message on the caller's thread (it needs
    the app context for templates) and hands it to a daemon worker. With
    MAIL_SUPPRESS_SEND the message is appended to ``outbox`` instead.
    """

    def __init__(self, app=None):
        self.app = None
        self.outbox = []
        self._queue = queue.Queue()
        self._worker = None
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions["email_queue"] = self

    def build_message(self, to, subject, template, context=None, reply_to=None):
        context = context or {}
        config = self.app.config

        from_name = config.get("MAIL_FROM_NAME", "The Monetary Catalyst")
        from_email = config.get("MAIL_FROM_ADDRESS") or config.get("MAIL_USERNAME", "")

        html_body = render_template(template, **context)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{from_name} <{from_email}>"
        msg["To"] = to if isinstance(to, str) else ", ".join(to)

        if reply_to:
            msg["Reply-To"] = reply_to

        msg.attach(MIMEText(html_body, "html"))
        return msg

    def enqueue(self, to, subject, template, context=None, reply_to=None):
        """Queue a templated HTML email. Returns immediately."""
        msg = self.build_message(to, subject, template, context, reply_to)

        if self.app.config.get("MAIL_SUPPRESS_SEND"):
            self.outbox.append(msg)
            logger.info(f"Email suppressed (outbox) for {msg['To']} - {subject}")
            return msg

        self._queue.put(msg)
        self._ensure_worker()
        logger.info(f"Email queued for {msg['To']} - {subject}")
        return msg

    def send_now(self, to, subject, template, context=None, reply_to=None):
        """Same as enqueue but blocks until SMTP accepts (or fails)."""
        msg = self.build_message(to, subject, template, context, reply_to)
        if self.app.config.get("MAIL_SUPPRESS_SEND"):
            self.outbox.append(msg)
            return True
        return _send_smtp(self.app, msg)

    def _ensure_worker(self):
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._drain, name="email-queue", daemon=True
            )
            self._worker.start()

    def _drain(self):
        while True:
            msg = self._queue.get()
            try:
                _send_smtp(self.app, msg)
            except Exception:
                logger.exception(f"Email worker crashed sending to {msg['To']}")
            finally:
                self._queue.task_done()


# ──────────────────────────────────────────────
# Named messages
# ──────────────────────────────────────────────

def send_subscription_confirmation(mailer, to, name, plan_type):
    return mailer.enqueue(
        to=to,
        subject="Your Monetary Catalyst subscription is active",
        template="emails/subscription_confirmation.html",
        context={"name": name or "there", "plan_type": plan_type},
    )


def send_welcome_email(mailer, to, name):
    return mailer.enqueue(
        to=to,
        subject="Welcome to The Monetary Catalyst",
        template="emails/welcome.html",
        context={"name": name or "there"},
    )


def send_password_reset_email(mailer, to, reset_link):
    return mailer.enqueue(
        to=to,
        subject="Reset your password",
        template="emails/password_reset.html",
        context={"reset_link": reset_link},
    )


def send_newsletter_welcome(mailer, to, name, welcome_back=False):
    template = (
        "emails/newsletter_welcome_back.html"
        if welcome_back
        else "emails/newsletter_welcome.html"
    )
    subject = (
        "Welcome back to the newsletter"
        if welcome_back
        else "You're subscribed to The Monetary Catalyst newsletter"
    )
    return mailer.enqueue(to=to, subject=subject, template=template,
                          context={"name": name})


def send_contact_form_email(mailer, to, name, email, message):
    return mailer.enqueue(
        to=to,
        subject=f"New Contact Form Submission from {name}",
        template="emails/contact_notification.html",
        context={"name": name, "email": email, "message": message},
        reply_to=email,
    )
