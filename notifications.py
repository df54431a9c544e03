"""
Transactional email

`EmailSender` renders and sends the HTML emails through the SMTP relay.
`Notifier` schedules those sends as background tasks that run after the
response is prepared: a failure is logged and never reaches the client.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from html import escape
from typing import Any, Callable, Optional

from fastapi import BackgroundTasks

from config import Settings
from errors import UpstreamError
from models import Contact, MaintenanceService, Vehicle

logger = logging.getLogger(__name__)

FROM_NAME = "AutoParc"


def _layout(title: str, body: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1976d2; color: white; padding: 24px; text-align: center;">
        <h1 style="margin: 0;">AutoParc</h1>
        <p style="margin: 8px 0 0 0;">{title}</p>
      </div>
      <div style="padding: 24px; background: #f9f9f9; color: #333; line-height: 1.6;">
        {body}
      </div>
      <div style="background: #333; color: white; padding: 16px; text-align: center; font-size: 12px;">
        <p style="margin: 0;">© AutoParc. Tous droits réservés.</p>
      </div>
    </div>
    """


class EmailSender:
    def __init__(self, settings: Settings):
        self.host = settings.email_host
        self.port = settings.email_port
        self.user = settings.email_user
        self.password = settings.email_pass
        self.from_email = settings.email_from
        self.staff_email = settings.staff_email
        self.frontend_url = settings.frontend_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, html_body: str) -> None:
        if not self.configured:
            logger.info("SMTP not configured, skipping email '%s' to %s", subject, to)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((FROM_NAME, self.from_email))
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            if self.port == 465:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=15)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=15)
            with server:
                if self.port != 465:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise UpstreamError(f"Envoi de l'email impossible: {exc}") from exc
        logger.info("Email '%s' sent to %s", subject, to)

    # ---------- templates ----------

    def send_welcome(self, email: str, name: str) -> None:
        body = f"""
        <h2 style="color: #1976d2;">Bienvenue {escape(name)} !</h2>
        <p>Votre compte AutoParc a été créé avec succès.</p>
        <p><a href="{self.frontend_url}">Accéder à AutoParc</a></p>
        """
        self.send(email, "Bienvenue chez AutoParc !", _layout("Votre partenaire automobile de confiance", body))

    def send_password_reset(self, email: str, name: str, token: str) -> None:
        reset_url = f"{self.frontend_url}/reset-password/{token}"
        body = f"""
        <h2 style="color: #1976d2;">Bonjour {escape(name)},</h2>
        <p>Nous avons reçu une demande de réinitialisation de mot de passe pour votre compte.</p>
        <p><a href="{reset_url}">Réinitialiser mon mot de passe</a></p>
        <p style="font-size: 12px; color: #666;">Ce lien expirera dans 10 minutes.
        Si vous n'avez pas demandé cette réinitialisation, ignorez cet email.</p>
        """
        self.send(email, "Réinitialisation de votre mot de passe - AutoParc",
                  _layout("Réinitialisation de mot de passe", body))

    def send_contact_notification(self, contact: Contact) -> None:
        if not self.staff_email:
            return
        body = f"""
        <h2 style="color: #1976d2;">Nouveau message de contact</h2>
        <p><strong>Nom :</strong> {escape(contact.name)}</p>
        <p><strong>Email :</strong> {escape(contact.email)}</p>
        <p><strong>Téléphone :</strong> {escape(contact.phone or '-')}</p>
        <p><strong>Entreprise :</strong> {escape(contact.company or '-')}</p>
        <p><strong>Type :</strong> {escape(contact.type)}</p>
        <p><strong>Sujet :</strong> {escape(contact.subject)}</p>
        <hr/>
        <p>{escape(contact.message)}</p>
        """
        self.send(self.staff_email, f"Nouveau contact - {contact.subject}", _layout("Nouveau contact", body))

    def send_contact_response(self, contact: Contact, message: str) -> None:
        body = f"""
        <h2 style="color: #1976d2;">Bonjour {escape(contact.name)},</h2>
        <p>Nous vous remercions pour votre message concernant : <strong>{escape(contact.subject)}</strong></p>
        <div style="background: white; padding: 16px; border-left: 4px solid #43a047;">
          <p>{escape(message)}</p>
        </div>
        """
        self.send(contact.email, f"Réponse à votre demande - {contact.subject}",
                  _layout("Réponse à votre demande", body))

    def send_maintenance_notification(self, vehicle: Vehicle, service: MaintenanceService) -> None:
        if not self.staff_email:
            return
        next_service = vehicle.maintenance.next_service
        rows = [
            ("Type", service.type),
            ("Date", service.date.strftime("%d/%m/%Y")),
            ("Garage", service.garage),
            ("Coût", f"{service.cost:g} FCFA" if service.cost else None),
            ("Prochain service", next_service.strftime("%d/%m/%Y") if next_service else None),
        ]
        table = "".join(
            f"<p><strong>{label} :</strong> {escape(str(value))}</p>" for label, value in rows if value
        )
        body = f"""
        <h2 style="color: #f57c00;">Véhicule : {escape(vehicle.full_name)}</h2>
        {table}
        """
        self.send(self.staff_email, f"Maintenance programmée - {vehicle.full_name}",
                  _layout("Notification de maintenance", body))


class Notifier:
    """Best-effort email dispatch decoupled from the request path."""

    def __init__(self, sender: EmailSender):
        self.sender = sender

    def dispatch(self, background_tasks: Optional[BackgroundTasks], label: str,
                 send: Callable[..., None], *args: Any) -> None:
        if background_tasks is None:
            self._run(label, send, *args)
            return
        background_tasks.add_task(self._run, label, send, *args)

    @staticmethod
    def _run(label: str, send: Callable[..., None], *args: Any) -> None:
        try:
            send(*args)
        except Exception:
            logger.exception("Best-effort email '%s' failed", label)
