import logging
import time
import uuid
from typing import Dict, Optional, Protocol
import httpx

from bookhive.config import Settings

logger = logging.getLogger(__name__)

class EmailDeliveryError(Exception):
    """Raised by a mailer when a message could not be handed to the provider."""

class Mailer(Protocol):
    async def send(self, *, to: str, subject: str, html: Optional[str] = None, text: Optional[str] = None) -> str: ...
    async def aclose(self) -> None: ...

def _email_id(prefix: str = "email") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"

class LogMailer:
    """Simulation mode: the message is written to the log instead of being delivered."""

    async def send(self, *, to: str, subject: str, html: Optional[str] = None, text: Optional[str] = None) -> str:
        email_id = _email_id()
        logger.info(
            "[email] simulated delivery id=%s to=%s subject=%r html=%d chars text=%d chars",
            email_id, to, subject, len(html or ""), len(text or ""),
        )
        return email_id

    async def aclose(self) -> None:
        return None

class GraphClient:
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        user_upn: str,
        base_url: str = "https://graph.microsoft.com/v1.0",
        token_url_tpl: str = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_upn = user_upn
        self.base_url = base_url
        self.token_url = token_url_tpl.format(tenant=tenant_id)

        self._access_token: Optional[str] = None
        self._exp_epoch: float = 0.0
        self._http = http or httpx.AsyncClient(timeout=20)

    async def aclose(self):
        await self._http.aclose()

    async def _get_token(self) -> str:
        now = time.time()
        if self._access_token and now < (self._exp_epoch - 60):
            return self._access_token

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": "https://graph.microsoft.com/.default",
            "grant_type": "client_credentials",
        }
        resp = await self._http.post(self.token_url, data=data)
        resp.raise_for_status()
        payload = resp.json()
        self._access_token = payload["access_token"]
        self._exp_epoch = now + int(payload.get("expires_in", 3600))
        return self._access_token

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_token()
        return {"Authorization": f"Bearer {token}"}

    async def send(self, *, to: str, subject: str, html: Optional[str] = None, text: Optional[str] = None) -> str:
        url = f"{self.base_url}/users/{self.user_upn}/sendMail"
        content_type, content = ("HTML", html) if html else ("Text", text or "")
        payload = {
            "message": {
                "subject": subject,
                "body": {"contentType": content_type, "content": content},
                "toRecipients": [{"emailAddress": {"address": to}}],
            },
            "saveToSentItems": True,
        }
        try:
            resp = await self._http.post(url, headers=await self._auth_headers(), json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Graph sendMail failed: {e}") from e
        # sendMail answers 202 without a message id
        return _email_id("graph")

def build_mailer(settings: Settings) -> Mailer:
    graph_ready = all([settings.GRAPH_TENANT_ID, settings.GRAPH_CLIENT_ID, settings.GRAPH_CLIENT_SECRET, settings.GRAPH_USER_UPN])
    if settings.EMAIL_BACKEND == "graph":
        if graph_ready:
            return GraphClient(
                tenant_id=settings.GRAPH_TENANT_ID,
                client_id=settings.GRAPH_CLIENT_ID,
                client_secret=settings.GRAPH_CLIENT_SECRET,
                user_upn=settings.GRAPH_USER_UPN,
            )
        logger.warning("[email] EMAIL_BACKEND=graph but GRAPH_* settings are incomplete; using log mailer")
    return LogMailer()
