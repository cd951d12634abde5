"""Email notifications with optional certificate attachments."""
import asyncio
import os
import smtplib
import textwrap
from email.message import EmailMessage

from jinja2 import Template, StrictUndefined, TemplateError

from deploy import deploy_logger
from deploy.actions.base import DeployAction, DeployContext
from lib.config import DEFAULT_FROM_ADDRESS, SmtpConfig
from lib.errors import IOFailure, Malformed

DEFAULT_SUBJECT = "Certificate Update: {name}"

DEFAULT_TEXT = """\
Certificate {{ certificate.name }} was updated on {{ date }} at {{ time }}.

Fingerprint: {{ certificate.fingerprint }}
Subject:     {{ certificate.subject }}
Issuer:      {{ certificate.issuer }}
Valid from:  {{ certificate.validFrom }}
Valid to:    {{ certificate.validTo }}
{% if certificate.domains %}
Domains:     {{ certificate.domains | join(', ') }}
{% endif %}
Days until expiry: {{ certificate.daysUntilExpiry }}
"""

DEFAULT_HTML = """\
<h2>Certificate {{ certificate.name }} updated</h2>
<table>
  <tr><th align="left">Fingerprint</th><td>{{ certificate.fingerprint }}</td></tr>
  <tr><th align="left">Subject</th><td>{{ certificate.subject }}</td></tr>
  <tr><th align="left">Issuer</th><td>{{ certificate.issuer }}</td></tr>
  <tr><th align="left">Valid from</th><td>{{ certificate.validFrom }}</td></tr>
  <tr><th align="left">Valid to</th><td>{{ certificate.validTo }}</td></tr>
{% if certificate.domains %}
  <tr><th align="left">Domains</th><td>{{ certificate.domains | join(', ') }}</td></tr>
{% endif %}
  <tr><th align="left">Days until expiry</th><td>{{ certificate.daysUntilExpiry }}</td></tr>
</table>
<p>Sent {{ timestamp }}</p>
"""


def recipients(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [address.strip() for address in value.split(",") if address.strip()]
    return [str(address).strip() for address in value if str(address).strip()]


class EmailAction(DeployAction):
    type = "email"
    timeout_key = "email"

    def smtp_settings(self) -> SmtpConfig:
        fallback = self.config.smtp
        smtp = self.spec.get("smtp") or {}
        host = smtp.get("host") or (fallback.host if fallback else None)
        if not host:
            raise Malformed("email action has no SMTP host and no default is configured")
        return SmtpConfig(
            host=host,
            port=int(smtp.get("port") or (fallback.port if fallback else 587)),
            secure=bool(smtp.get("secure", fallback.secure if fallback else False)),
            user=smtp.get("user") or (fallback.user if fallback else None),
            password=smtp.get("password") or (fallback.password if fallback else None),
            from_address=self.spec.get("from") or (fallback.from_address if fallback else DEFAULT_FROM_ADDRESS),
        )

    def render(self, template: str, context: DeployContext) -> str:
        variables = {
            "certificate": {**context.certificate_summary(), "paths": dict(context.paths)},
            "date": context.now.strftime("%Y-%m-%d"),
            "time": context.now.strftime("%H:%M:%S"),
            "timestamp": context.values["timestamp"],
        }
        try:
            rendered = Template(
                textwrap.dedent(template),
                trim_blocks=True,
                lstrip_blocks=True,
                undefined=StrictUndefined
            ).render(variables)
        except TemplateError as exc:
            raise Malformed(f"Email template failed to render: {exc}") from exc
        return context.substitute(rendered)

    def build_message(self, context: DeployContext, smtp: SmtpConfig) -> EmailMessage:
        to = recipients(self.spec.get("to"))
        if not to:
            raise Malformed("email action has no recipients")

        message = EmailMessage()
        message["From"] = smtp.from_address
        message["To"] = ", ".join(to)
        if recipients(self.spec.get("cc")):
            message["Cc"] = ", ".join(recipients(self.spec.get("cc")))
        message["Subject"] = context.substitute(self.spec.get("subject") or DEFAULT_SUBJECT)

        template = self.spec.get("template") or {}
        message.set_content(self.render(template.get("text") or DEFAULT_TEXT, context))
        message.add_alternative(self.render(template.get("html") or DEFAULT_HTML, context), subtype="html")

        for source in self.spec.get("attachCertificates") or []:
            path = context.resolve_source(source)
            with open(path, "rb") as attachment:
                message.add_attachment(attachment.read(), maintype="application", subtype="octet-stream",
                                       filename=os.path.basename(path))
        return message

    def _send(self, message: EmailMessage, smtp: SmtpConfig, all_recipients: list[str]) -> None:
        smtp_class = smtplib.SMTP_SSL if smtp.secure else smtplib.SMTP
        with smtp_class(smtp.host, smtp.port, timeout=self.transport_timeout) as server:
            if not smtp.secure:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            if smtp.user:
                server.login(smtp.user, smtp.password or "")
            server.send_message(message, to_addrs=all_recipients)

    async def execute(self, context: DeployContext) -> str:
        smtp = self.smtp_settings()
        message = self.build_message(context, smtp)
        all_recipients = recipients(self.spec.get("to")) + recipients(self.spec.get("cc")) \
            + recipients(self.spec.get("bcc"))

        try:
            await asyncio.to_thread(self._send, message, smtp, all_recipients)
        except (smtplib.SMTPException, OSError) as exc:
            raise IOFailure(f"Sending email via {smtp.host}:{smtp.port} failed: {exc}") from exc
        deploy_logger.info("Sent certificate email for %s to %s", context.certificate.name, message["To"])
        return f"Email sent to {len(all_recipients)} recipients"
