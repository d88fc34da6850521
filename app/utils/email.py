"""
Email Utility for Club Gym
Sends the HTML emails produced from the notification outbox
"""
import html
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from app.config import (
    SMTP_HOST,
    SMTP_PORT,
    SMTP_USER,
    SMTP_PASSWORD,
    SMTP_FROM_EMAIL,
    SMTP_FROM_NAME,
)

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 15


def _open_smtp() -> smtplib.SMTP:
    # Port 465 is implicit TLS, everything else upgrades with STARTTLS
    if SMTP_PORT == 465:
        return smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS)

    server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS)
    server.starttls()
    return server


def send_email(to_email: str, subject: str, body: str) -> bool:
    """
    Send one HTML email over SMTP

    Returns:
        bool: True when the server accepted the message. Failures are logged,
        never raised, so the outbox job can decide whether to retry.
    """
    if not SMTP_HOST or not SMTP_USER:
        logger.warning("SMTP is not configured, email to %s not sent", to_email)
        return False

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = f"{SMTP_FROM_NAME} <{SMTP_FROM_EMAIL or SMTP_USER}>"
    message["To"] = to_email
    message.attach(MIMEText(body, "html"))

    try:
        with _open_smtp() as server:
            server.login(SMTP_USER, SMTP_PASSWORD)
            server.send_message(message)
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        return False
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send email to %s: %s: %s", to_email, type(e).__name__, e)
        return False

    logger.info("Email sent to %s", to_email)
    return True


def render_notification_email(username: str, title: str, message: str, link: str = None) -> str:
    """Wrap a notification in the standard HTML layout."""
    link_html = f'<p><a href="{html.escape(link)}">Open in Club Gym</a></p>' if link else ""

    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f9f9f9; border-radius: 10px; }}
            .header {{ background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; padding: 20px; text-align: center; border-radius: 10px 10px 0 0; }}
            .content {{ background-color: white; padding: 30px; border-radius: 0 0 10px 10px; }}
            .footer {{ text-align: center; margin-top: 20px; font-size: 12px; color: #666; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header">
                <h1>{html.escape(title)}</h1>
            </div>
            <div class="content">
                <p>Hi <strong>{html.escape(username)}</strong>,</p>
                <p>{html.escape(message)}</p>
                {link_html}
                <p>See you at the gym,<br><strong>Club Gym Team</strong></p>
                <div class="footer">
                    <p>&copy; Club Gym. All rights reserved.</p>
                </div>
            </div>
        </div>
    </body>
    </html>
    """


def send_notification_email(to_email: str, username: str, title: str, message: str, link: str = None) -> bool:
    """
    Send one outbox notification by email

    Returns:
        bool: True if email sent successfully, False otherwise
    """
    subject = f"{title} | Club Gym"
    body = render_notification_email(username, title, message, link)
    return send_email(to_email, subject, body)
