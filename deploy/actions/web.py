"""HTTP API calls and webhooks."""
import json
import os

import aiohttp

from deploy import deploy_logger
from deploy.actions.base import DeployAction, DeployContext
from lib.errors import IOFailure, Malformed
from lib.util import iso_timestamp


class HttpAction(DeployAction):
    """Shared request handling for api-call and webhook."""

    timeout_key = "http"

    def headers(self, context: DeployContext) -> dict[str, str]:
        headers = {key: str(value) for key, value in context.substitute_all(self.spec.get("headers") or {}).items()}
        if self.spec.get("token"):
            headers["Authorization"] = f"Bearer {self.spec['token']}"
        if self.spec.get("apiKey"):
            headers[self.spec.get("apiKeyHeader") or "X-API-Key"] = self.spec["apiKey"]
        return headers

    def basic_auth(self) -> aiohttp.BasicAuth | None:
        if self.spec.get("username") and not self.spec.get("token"):
            return aiohttp.BasicAuth(self.spec["username"], self.spec.get("password") or "")
        return None

    async def send(self, method: str, url: str, **kwargs) -> str:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        ssl = None if self.spec.get("verifySsl", True) else False
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, ssl=ssl, auth=self.basic_auth(), **kwargs) as response:
                    body = await response.text()
                    if not 200 <= response.status < 300:
                        raise IOFailure(f"{method} {url} returned {response.status}: {body[:200]}")
                    return f"{method} {url} returned {response.status}"
        except aiohttp.ClientError as exc:
            raise IOFailure(f"{method} {url} failed: {exc}") from exc


class ApiCallAction(HttpAction):
    type = "api-call"

    def _multipart(self, context: DeployContext) -> aiohttp.FormData:
        form = aiohttp.FormData()
        for field, source in (self.spec.get("files") or {"certificate": "cert", "privateKey": "key"}).items():
            path = context.resolve_source(source)
            with open(path, "rb") as attachment:
                form.add_field(field, attachment.read(), filename=os.path.basename(path),
                               content_type="application/octet-stream")
        for key, value in context.substitute_all(self.spec.get("data") or {}).items():
            form.add_field(key, str(value))
        return form

    def _body(self, context: DeployContext) -> dict:
        if self.spec.get("sendFiles"):
            return {"data": self._multipart(context)}

        if self.spec.get("jsonPayload") is not None:
            payload = self.spec["jsonPayload"]
            if isinstance(payload, str):
                try:
                    payload = json.loads(payload)
                except json.JSONDecodeError as exc:
                    raise Malformed(f"jsonPayload is not valid JSON: {exc}") from exc
            return {"json": context.substitute_all(payload)}

        if self.spec.get("formData") is not None:
            return {"data": {key: str(value) for key, value in
                             context.substitute_all(self.spec["formData"]).items()}}

        if self.spec.get("data") is not None:
            data = self.spec["data"]
            return {"data": context.substitute(data) if isinstance(data, str) else json.dumps(data)}
        return {}

    async def execute(self, context: DeployContext) -> str:
        self.require("url")
        method = (self.spec.get("method") or "POST").upper()
        url = context.substitute(self.spec["url"])
        message = await self.send(method, url, headers=self.headers(context), **self._body(context))
        deploy_logger.info("API call for %s: %s", context.certificate.name, message)
        return message


class WebhookAction(HttpAction):
    type = "webhook"

    def payload(self, context: DeployContext) -> dict:
        payload = {
            "event": self.spec.get("event") or "certificate.deployed",
            "timestamp": iso_timestamp(context.now),
            "certificate": context.certificate_summary(),
        }
        if self.spec.get("includeFiles"):
            payload["files"] = {
                source: context.read_source(source).decode("utf-8", errors="replace")
                for source in self.spec["includeFiles"]
            }
        if self.spec.get("includeCustomData") and self.spec.get("customData") is not None:
            payload["customData"] = context.substitute_all(self.spec["customData"])
        return payload

    async def execute(self, context: DeployContext) -> str:
        self.require("url")
        url = context.substitute(self.spec["url"])
        message = await self.send(
            (self.spec.get("method") or "POST").upper(), url,
            headers=self.headers(context), json=self.payload(context)
        )
        deploy_logger.info("Webhook for %s: %s", context.certificate.name, message)
        return message
