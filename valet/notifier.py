import asyncio
import json
import logging

import requests
from pywebpush import WebPushException, webpush

from valet.config import Settings
from valet.models import HelpRequest, PushSubscription

logger = logging.getLogger(__name__)

HELP_REQUEST_PATH = "/help-request"


class PushDeliveryError(Exception):
    def __init__(self, endpoint: str, status_code: int | None) -> None:
        super().__init__(f"push to {endpoint[:50]} failed ({status_code})")
        self.endpoint = endpoint
        self.status_code = status_code

    @property
    def subscription_gone(self) -> bool:
        return self.status_code in (404, 410)


def build_help_request_payload(request: HelpRequest, app_url: str = "") -> dict:
    urgency = "URGENT" if request.request_type.lower() == "urgent" else "HELP"
    return {
        "title": f"{urgency}: Help Request",
        "body": (
            f"{request.requesting_location} needs help: "
            f"{request.description}. Tap to respond."
        ),
        "url": f"{app_url}{HELP_REQUEST_PATH}",
        "requestId": request.id,
    }


async def send_push(
    subscription: PushSubscription, payload: dict, settings: Settings
) -> None:
    """
    Deliver one web push message. pywebpush is blocking, so the request runs
    in a worker thread. Every delivery failure surfaces as PushDeliveryError.
    """
    try:
        await asyncio.to_thread(
            webpush,
            subscription_info=subscription.subscription_info(),
            data=json.dumps(payload),
            vapid_private_key=settings.vapid_private_key,
            vapid_claims={"sub": settings.vapid_claims_email},
        )
    except WebPushException as exc:
        response = getattr(exc, "response", None)
        status = response.status_code if response is not None else None
        raise PushDeliveryError(subscription.endpoint, status) from exc
    except requests.RequestException as exc:
        # pywebpush lets transport errors from requests through unwrapped
        raise PushDeliveryError(subscription.endpoint, None) from exc
