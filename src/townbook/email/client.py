import time
from typing import Dict, Optional
import httpx

from townbook.config import settings

class GraphMailer:
    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        user_upn: str,
        base_url: str = "https://graph.microsoft.com/v1.0",
        token_url_tpl: str = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_upn = user_upn
        self.base_url = base_url
        self.token_url = token_url_tpl.format(tenant=tenant_id)

        self._access_token: Optional[str] = None
        self._exp_epoch: float = 0.0
        self._http = httpx.AsyncClient(timeout=20, transport=transport)

    @classmethod
    def from_settings(cls) -> Optional["GraphMailer"]:
        if not all([settings.GRAPH_TENANT_ID, settings.GRAPH_CLIENT_ID, settings.GRAPH_CLIENT_SECRET, settings.GRAPH_USER_UPN]):
            return None
        return cls(
            tenant_id=settings.GRAPH_TENANT_ID,
            client_id=settings.GRAPH_CLIENT_ID,
            client_secret=settings.GRAPH_CLIENT_SECRET,
            user_upn=settings.GRAPH_USER_UPN,
        )

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

    async def send_mail(self, to_email: str, subject: str, body_text: str) -> None:
        url = f"{self.base_url}/users/{self.user_upn}/sendMail"
        payload = {
            "message": {
                "subject": subject,
                "body": {"contentType": "Text", "content": body_text},
                "toRecipients": [{"emailAddress": {"address": to_email}}],
            }
        }
        resp = await self._http.post(url, headers=await self._auth_headers(), json=payload)
        resp.raise_for_status()
