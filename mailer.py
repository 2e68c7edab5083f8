import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional, Sequence

from config import Settings, get_settings
from templating import templates

logger = logging.getLogger(__name__)

ALERT_COLORS = {
    "danger": "#dc2626",
    "warning": "#d97706",
    "info": "#2563eb",
    "success": "#16a34a",
}


class Mailer:
    """SMTP delivery for alert emails.

    Delivery is best-effort: failures are logged and reported as ``False``,
    never raised.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host)

    def render_alerts(self, display_name: str, alerts: Sequence[dict[str, str]]) -> str:
        return templates.get_template("alerts_email.html").render(
            display_name=display_name,
            alerts=alerts,
            colors=ALERT_COLORS,
            frontend_url=self.settings.frontend_url.rstrip("/"),
            sent_at=datetime.now().strftime("%d-%m-%Y %H:%M"),
        )

    def build_message(
        self, address: str, display_name: str, alerts: Sequence[dict[str, str]]
    ) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"MoneyWise: {len(alerts)} financial alert(s)"
        message["From"] = self.settings.mail_from
        message["To"] = address
        lines = [f"Hello {display_name},", ""]
        lines.extend(
            f"- [{alert['severity']}] {alert['message']}" for alert in alerts
        )
        message.set_content("\n".join(lines))
        message.add_alternative(self.render_alerts(display_name, alerts), subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_password)
            smtp.send_message(message)

    def send_alert_email(
        self, address: str, display_name: str, alerts: Sequence[dict[str, str]]
    ) -> bool:
        if not self.configured:
            logger.warning(f"alert_email_skipped: to={address} reason=smtp_not_configured")
            return False
        try:
            self._deliver(self.build_message(address, display_name, alerts))
        except (smtplib.SMTPException, OSError):
            logger.exception(f"alert_email_failed: to={address}")
            return False
        logger.info(f"alert_email_sent: to={address} alerts={len(alerts)}")
        return True
