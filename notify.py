# notify.py
import os
import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

import httpx

from chatstore import User

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_URL = os.getenv("SLACK_WEBHOOK_URL", "")
GOTIFY_URL = os.getenv("GOTIFY_URL", "http://gotify-service:80")
GOTIFY_TOKEN = os.getenv("GOTIFY_TOKEN", "")
APP_URL = os.getenv("APP_URL", "http://localhost:3000")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")


def approval_url(user_id: str, action: str, app_url: str = APP_URL, admin_token: str = ADMIN_TOKEN) -> str:
    params = {"userId": user_id, "action": action}
    if admin_token:
        params["token"] = admin_token
    return f"{app_url.rstrip('/')}/api/admin/approve?{urlencode(params)}"


def slack_signup_card(user: User, app_url: str = APP_URL, admin_token: str = ADMIN_TOKEN) -> Dict[str, Any]:
    return {
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "New User Signup Request", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Email:*\n{user.email}"},
                    {"type": "mrkdwn", "text": f"*Name:*\n{user.name or 'Not provided'}"},
                    {"type": "mrkdwn", "text": f"*User ID:*\n`{user.id}`"},
                    {"type": "mrkdwn", "text": f"*Signed up:*\n{user.created_at}"},
                ],
            },
            {"type": "divider"},
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Approve", "emoji": True},
                        "style": "primary",
                        "url": approval_url(user.id, "approve", app_url, admin_token),
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Decline", "emoji": True},
                        "style": "danger",
                        "url": approval_url(user.id, "decline", app_url, admin_token),
                    },
                ],
            },
        ]
    }


def gotify_signup_message(user: User, app_url: str = APP_URL, admin_token: str = ADMIN_TOKEN) -> Dict[str, Any]:
    approve = approval_url(user.id, "approve", app_url, admin_token)
    decline = approval_url(user.id, "decline", app_url, admin_token)
    return {
        "title": "New User Signup",
        "message": (
            f"**Email:** {user.email}\n"
            f"**Name:** {user.name or 'Not provided'}\n"
            f"**Time:** {user.created_at}\n\n"
            "---\n\n"
            f"[**APPROVE**]({approve})\n\n"
            f"[**DECLINE**]({decline})"
        ),
        "priority": 8,
        "extras": {
            "client::display": {"contentType": "text/markdown"},
            "client::notification": {"click": {"url": approve}},
        },
    }


class Notifier:
    """Posts signup and approval events to Slack and/or Gotify. Failures are only logged."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        slack_webhook_url: str = SLACK_WEBHOOK_URL,
        gotify_url: str = GOTIFY_URL,
        gotify_token: str = GOTIFY_TOKEN,
        app_url: str = APP_URL,
        admin_token: str = ADMIN_TOKEN,
    ):
        self.client = client
        self.slack_webhook_url = slack_webhook_url
        self.gotify_url = gotify_url.rstrip("/")
        self.gotify_token = gotify_token
        self.app_url = app_url
        self.admin_token = admin_token

    async def _post(self, channel: str, url: str, payload: Dict[str, Any]) -> bool:
        try:
            r = await self.client.post(url, json=payload, timeout=10.0)
        except httpx.HTTPError as e:
            logger.error("%s notification failed: %s", channel, e)
            return False
        if r.status_code >= 400:
            logger.error("%s notification failed: HTTP %d", channel, r.status_code)
            return False
        return True

    def _gotify_endpoint(self) -> str:
        return f"{self.gotify_url}/message?token={self.gotify_token}"

    async def new_user_signup(self, user: User) -> List[bool]:
        sent: List[bool] = []
        if self.slack_webhook_url:
            sent.append(await self._post("Slack", self.slack_webhook_url, slack_signup_card(user, self.app_url, self.admin_token)))
        if self.gotify_token:
            sent.append(await self._post("Gotify", self._gotify_endpoint(), gotify_signup_message(user, self.app_url, self.admin_token)))
        if not sent:
            logger.warning("No notification channel configured, skipping signup notification for %s", user.email)
        elif any(sent):
            logger.info("Signup notification sent for user: %s", user.email)
        return sent

    async def approval_action(self, email: str, action: str) -> List[bool]:
        sent: List[bool] = []
        if self.slack_webhook_url:
            emoji = ":white_check_mark:" if action == "approved" else ":x:"
            card = {"blocks": [{"type": "section", "text": {"type": "mrkdwn", "text": f"{emoji} User *{email}* has been *{action}*"}}]}
            sent.append(await self._post("Slack", self.slack_webhook_url, card))
        if self.gotify_token:
            mark = "✓" if action == "approved" else "✗"
            msg = {"title": f"User {action}", "message": f"{mark} {email} has been {action}", "priority": 5}
            sent.append(await self._post("Gotify", self._gotify_endpoint(), msg))
        return sent
