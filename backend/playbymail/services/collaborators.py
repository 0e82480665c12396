"""Object store, secret store and mailers used by the turn-sheet engine."""
import logging
import os
import smtplib
import socket
import zlib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import List, Optional

from playbymail.errors import ObjectNotFound, PermanentFailure, TransientFailure


logger = logging.getLogger(__name__)


class FilesystemObjectStore:
    """Blobs under a root directory, zlib-compressed at rest."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f'object key {key!r} escapes the store root')
        return path

    def put_object(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path + '.tmp'
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp, 'wb') as fh:
                fh.write(zlib.compress(data))
            os.replace(tmp, path)
        except OSError as exc:
            raise TransientFailure(f'could not write object {key}: {exc}') from exc

    def get_object(self, key: str) -> bytes:
        try:
            with open(self._path(key), 'rb') as fh:
                return zlib.decompress(fh.read())
        except FileNotFoundError:
            raise ObjectNotFound(f'object {key} not found') from None
        except OSError as exc:
            raise TransientFailure(f'could not read object {key}: {exc}') from exc


class ConfigSecretStore:
    """Secrets from the Flask config, then the process environment."""

    def __init__(self, config):
        self.config = config

    def get_secret(self, secret_id: str) -> Optional[bytes]:
        value = self.config.get(secret_id) or os.environ.get(secret_id)
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode('utf-8')


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str = 'application/pdf'


@dataclass
class OutgoingMail:
    sender: str
    to: str
    subject: str
    body_html: str
    attachments: List[Attachment] = field(default_factory=list)


def build_message(mail: OutgoingMail) -> EmailMessage:
    msg = EmailMessage()
    msg['From'] = mail.sender
    msg['To'] = mail.to
    msg['Subject'] = mail.subject
    msg.set_content('This message requires an HTML capable mail reader.')
    msg.add_alternative(mail.body_html, subtype='html')
    for attachment in mail.attachments:
        maintype, _, subtype = attachment.mime_type.partition('/')
        msg.add_attachment(attachment.content, maintype=maintype, subtype=subtype or 'octet-stream',
                           filename=attachment.filename)
    return msg


class SMTPMailer:
    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True, timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, mail: OutgoingMail) -> None:
        message = build_message(mail)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or '')
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentFailure(f'recipient refused: {mail.to}') from exc
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise TransientFailure(f'smtp {exc.smtp_code}: {exc.smtp_error!r}') from exc
            raise PermanentFailure(f'smtp {exc.smtp_code}: {exc.smtp_error!r}') from exc
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, socket.timeout, OSError) as exc:
            raise TransientFailure(f'smtp transport error: {exc}') from exc
        logger.info(f"[mail-sent] to={mail.to} subject={mail.subject!r} attachments={len(mail.attachments)}")


class LogMailer:
    """Development mailer: logs the message instead of sending it."""

    def send(self, mail: OutgoingMail) -> None:
        logger.info(
            f"[mail-log] to={mail.to} subject={mail.subject!r} "
            f"attachments={[a.filename for a in mail.attachments]}"
        )
