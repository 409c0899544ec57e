"""
Best-effort push notifications through the Expo push service.

Nothing in this module raises to its caller: a notification that cannot be
delivered is logged and reported as False.
"""

import re
import logging
from typing import Any, Dict, Optional

import requests

from .adapters.base import StorageAdapter

logger = logging.getLogger("workout_worker")

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
_EXPO_TOKEN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")


def is_expo_push_token(token: Optional[str]) -> bool:
    """Check the Expo push token format (ExponentPushToken[...] / ExpoPushToken[...])"""
    return bool(token) and bool(_EXPO_TOKEN.match(token))


def build_workout_notification(workout_name: str, success: bool) -> Dict[str, Any]:
    """Title, body and data payload for a processed workout"""
    if success:
        return {
            "title": "✅ Workout Ready!",
            "body": f"{workout_name} has been processed and is ready to view.",
            "data": {"type": "workout_processed", "workoutName": workout_name, "success": True},
        }
    return {
        "title": "❌ Processing Failed",
        "body": f"Unable to process {workout_name}. You can still view it manually.",
        "data": {"type": "workout_processed", "workoutName": workout_name, "success": False},
    }


class ExpoPushNotifier:
    """Sends workout processing notifications to a user's device"""

    def __init__(self, storage: StorageAdapter, push_url: str = EXPO_PUSH_URL, timeout: float = 10):
        self.storage = storage
        self.push_url = push_url
        self.timeout = timeout

    def send_push_notification(self, push_token: str, notification: Dict[str, Any]) -> bool:
        """
        Send one notification to one device.

        Returns:
            True if Expo accepted the message
        """
        if not is_expo_push_token(push_token):
            logger.error(f"Invalid push token: {push_token}")
            return False

        message = {
            "to": push_token,
            "sound": "default",
            "title": notification["title"],
            "body": notification["body"],
            "data": notification.get("data", {}),
        }

        try:
            response = requests.post(
                self.push_url,
                json=[message],
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            tickets = response.json().get("data", [])
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Error sending push notification: {e}")
            return False

        if isinstance(tickets, dict):
            tickets = [tickets]
        for ticket in tickets:
            if ticket.get("status") == "error":
                details = ticket.get("details") or {}
                logger.error(f"Notification error: {ticket.get('message')} ({details.get('error')})")
                return False

        logger.info("Push notification sent successfully")
        return True

    def send_workout_notification(self, user_id: str, workout_name: str, success: bool = True) -> bool:
        """Notify a user that their workout finished processing"""
        try:
            push_token = self.storage.get_push_token(user_id)
            if not push_token:
                logger.info(f"No push token found for user {user_id}, skipping notification")
                return False

            sent = self.send_push_notification(push_token, build_workout_notification(workout_name, success))
            if sent:
                logger.info(f"Sent notification to user {user_id}")
            return sent
        except Exception as e:
            logger.error(f"Error sending workout notification to user {user_id}: {e}")
            return False
