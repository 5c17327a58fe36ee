"""Xero authorization endpoints: consent redirect, callback and disconnect."""

import html
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel

from bizmate.api.deps import get_authorization_flow
from bizmate.services.authorization import AuthorizationFlow

logger = logging.getLogger(__name__)

router = APIRouter()

Flow = Annotated[AuthorizationFlow, Depends(get_authorization_flow)]


class DisconnectResponse(BaseModel):
    """Result of an explicit disconnect."""
    user_id: str
    disconnected: bool


def render_result_page(success: bool, message: str) -> str:
    """Small standalone page shown in the user's browser after the callback."""
    icon = "✅" if success else "❌"
    title = "授权成功" if success else "授权失败"
    hint = "现在可以回到飞书，继续与 Bizmate 对话。" if success else "请回到飞书重新发送授权链接后再试一次。"
    color = "#1a7f37" if success else "#cf222e"
    return f"""<!DOCTYPE html>
<html lang="zh-CN">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Bizmate - {title}</title>
</head>
<body style="font-family: sans-serif; text-align: center; padding: 48px;">
  <h1 style="color: {color};">{icon} {title}</h1>
  <p>{html.escape(message)}</p>
  <p>{hint}</p>
</body>
</html>"""


@router.get("/auth")
async def start_authorization(
    flow: Flow,
    user_id: str = Query(..., min_length=1),
) -> RedirectResponse:
    """Redirect the user to Xero's consent screen."""
    url = await flow.issue_authorization_url(user_id)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/callback", response_class=HTMLResponse)
async def authorization_callback(
    flow: Flow,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> HTMLResponse:
    """Complete the authorization started by /auth."""
    if error:
        logger.warning(f"Xero returned authorization error: {error}")
        return HTMLResponse(
            render_result_page(False, f"Xero 授权失败: {error_description or error}"),
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    if not code or not state:
        return HTMLResponse(
            render_result_page(False, "Xero 授权失败: 缺少 code 或 state 参数"),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    result = await flow.consume_callback(code, state)
    return HTMLResponse(
        render_result_page(result.success, result.message),
        status_code=status.HTTP_200_OK if result.success else status.HTTP_400_BAD_REQUEST,
    )


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(
    flow: Flow,
    user_id: str = Query(..., min_length=1),
) -> DisconnectResponse:
    """Remove the user's stored Xero credential."""
    disconnected = await flow.disconnect(user_id)
    return DisconnectResponse(user_id=user_id, disconnected=disconnected)
