"""WeChat mini-program login: exchange a ``wx.login`` code for a session."""
import logging
from dataclasses import dataclass

import httpx

from greenbook.config import settings

logger = logging.getLogger(__name__)


class WeChatError(Exception):
    """The code exchange failed (transport error or non-zero ``errcode``)."""


@dataclass
class WeChatSession:
    open_id: str
    session_key: str
    union_id: str | None = None


class WeChatClient:
    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = "https://api.weixin.qq.com",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def code_to_session(self, code: str) -> WeChatSession:
        params = {
            "appid": self.app_id,
            "secret": self.app_secret,
            "js_code": code,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get("/sns/jscode2session", params=params)
                resp.raise_for_status()
                # WeChat answers text/plain, so parse the body explicitly.
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("jscode2session request failed: %s", exc)
            raise WeChatError("WeChat session exchange failed") from exc

        if data.get("errcode"):
            raise WeChatError(f"WeChat error {data['errcode']}: {data.get('errmsg', '')}")
        if not data.get("openid"):
            raise WeChatError("WeChat response carried no openid")

        return WeChatSession(
            open_id=data["openid"],
            session_key=data.get("session_key", ""),
            union_id=data.get("unionid") or None,
        )


def get_wechat_client() -> WeChatClient:
    """FastAPI dependency; overridden in tests with a mock transport."""
    return WeChatClient(
        settings.WECHAT_APP_ID,
        settings.WECHAT_APP_SECRET,
        base_url=settings.WECHAT_API_BASE,
        timeout=settings.WECHAT_TIMEOUT,
    )
