import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.mime.application import MIMEApplication
from typing import List, Optional, Dict, Any, Tuple
from pathlib import Path
import logging
from jinja2 import Environment, FileSystemLoader, select_autoescape
from app.core.config import settings

logger = logging.getLogger(__name__)

# (filename, content) pairs kept in memory; nothing is written to disk
Attachment = Tuple[str, bytes]


class EmailService:
    """
    Servicio de correo electrónico con soporte para templates Jinja2.
    """

    def __init__(self):
        self.smtp_server = settings.EMAIL_SMTP_SERVER
        self.smtp_port = settings.EMAIL_SMTP_PORT
        self.username = settings.EMAIL_USERNAME
        self.password = settings.EMAIL_PASSWORD
        self.use_tls = settings.EMAIL_USE_TLS
        self.from_email = settings.EMAIL_FROM
        self.from_name = settings.EMAIL_FROM_NAME

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def _create_smtp_connection(self):
        """Crear conexión SMTP segura."""
        try:
            if self.use_tls:
                context = ssl.create_default_context()
                server = smtplib.SMTP(self.smtp_server, self.smtp_port)
                server.starttls(context=context)
            else:
                server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port)

            server.login(self.username, self.password)
            return server
        except Exception as e:
            logger.error(f"Error creating SMTP connection: {str(e)}")
            raise

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Renderizar template de email con contexto.

        Args:
            template_name: Nombre del archivo de template
            context: Variables para el template

        Returns:
            HTML renderizado del template
        """
        try:
            template = self.jinja_env.get_template(template_name)
            return template.render(**context)
        except Exception as e:
            logger.error(f"Error rendering template {template_name}: {str(e)}")
            raise

    def build_message(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None
    ) -> MIMEMultipart:
        msg = MIMEMultipart('mixed')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = ', '.join(to_emails)

        body = MIMEMultipart('alternative')
        if text_content:
            body.attach(MIMEText(text_content, 'plain', 'utf-8'))
        if html_content:
            body.attach(MIMEText(html_content, 'html', 'utf-8'))
        msg.attach(body)

        for filename, content in attachments or []:
            part = MIMEApplication(content, Name=filename)
            part.add_header('Content-Disposition', 'attachment', filename=filename)
            msg.attach(part)

        return msg

    def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None
    ) -> bool:
        """
        Enviar correo electrónico.

        Returns:
            True si se envió correctamente, False en caso contrario
        """
        try:
            msg = self.build_message(to_emails, subject, html_content, text_content, attachments)
            with self._create_smtp_connection() as server:
                server.sendmail(self.from_email, to_emails, msg.as_string())

            logger.info(f"Email sent successfully to {', '.join(to_emails)}")
            return True

        except Exception as e:
            logger.error(f"Error sending email: {str(e)}")
            return False

    def send_template_email(
        self,
        to_emails: List[str],
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        attachments: Optional[List[Attachment]] = None
    ) -> bool:
        """Enviar correo usando template."""
        try:
            html_content = self.render_template(template_name, context)
        except Exception as e:
            logger.error(f"Error sending template email: {str(e)}")
            return False

        return self.send_email(
            to_emails=to_emails,
            subject=subject,
            html_content=html_content,
            attachments=attachments
        )


# Singleton instance
email_service = EmailService()
