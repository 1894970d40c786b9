import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from config import Settings, get_settings


logger = logging.getLogger(__name__)


class Mailer:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        if not self.settings.smtp_host:
            # No relay configured (local development): keep the message in the log.
            logger.info(f"mail_logged: to={to} subject={subject!r}\n{body}")
            return

        with smtplib.SMTP(
            self.settings.smtp_host, self.settings.smtp_port, timeout=10
        ) as smtp:
            if self.settings.smtp_user and self.settings.smtp_password:
                smtp.starttls()
                smtp.login(self.settings.smtp_user, self.settings.smtp_password)
            smtp.send_message(message)
        logger.info(f"mail_sent: to={to} subject={subject!r}")

    def send_reset_code(self, to: str, code: str) -> None:
        minutes = self.settings.reset_code_ttl_mins
        body = (
            "Recebemos um pedido para redefinir a sua senha no FinControl.\n\n"
            f"Código de verificação: {code}\n\n"
            f"O código expira em {minutes} minutos. Se você não fez este pedido, "
            "ignore este email.\n"
        )
        self.send(to, "Código de Redefinição de Senha - FinControl", body)

    def send_registration_notice(self, user_id: int, email: str, name: str) -> None:
        body = (
            "Novo usuário registrado no FinControl.\n\n"
            f"ID: {user_id}\nNome: {name}\nEmail: {email}\n"
        )
        self.send(
            self.settings.support_email, "Novo Usuário Registrado - FinControl", body
        )

    def send_support_message(
        self, sender_name: str, sender_email: str, category: str, subject: str, message: str
    ) -> None:
        body = (
            "Nova mensagem de suporte - FinControl\n\n"
            f"De: {sender_name} ({sender_email})\n"
            f"Categoria: {category}\n"
            f"Assunto: {subject}\n\n"
            f"Mensagem:\n{message}\n"
        )
        self.send(
            self.settings.support_email,
            f"Suporte FinControl - {category}: {subject}",
            body,
        )

    def send_support_confirmation(
        self, to: str, name: str, category: str, subject: str, message: str
    ) -> None:
        body = (
            f"Olá {name},\n\n"
            f'Recebemos sua mensagem de suporte sobre "{subject}".\n'
            "Entraremos em contato em breve.\n\n"
            f"Categoria: {category}\nAssunto: {subject}\nMensagem: {message}\n\n"
            "Equipe FinControl\n"
        )
        self.send(to, "Recebemos sua mensagem - FinControl", body)
