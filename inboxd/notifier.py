"""
Notifier - desktop notifications through the platform's own command
"""

import sys
import shutil
import logging
import subprocess
from typing import List, Optional

from inboxd.messages import extract_sender_name
from inboxd.models import EmailMessage


logger = logging.getLogger(__name__)

APP_NAME = 'Inboxd'
PREVIEW_SENDERS = 3


def _applescript_string(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def notify(title: str, message: str, subtitle: Optional[str] = None) -> bool:
    """Show one notification; returns whether a notifier command ran successfully"""
    if sys.platform == 'darwin':
        script = (
            f'display notification {_applescript_string(message)} '
            f'with title {_applescript_string(title or APP_NAME)} '
            f'subtitle {_applescript_string(subtitle or APP_NAME)} '
            f'sound name "default"'
        )
        command = ['osascript', '-e', script]
    elif shutil.which('notify-send'):
        command = ['notify-send', '--app-name', APP_NAME, title or APP_NAME, message]
    else:
        logger.info(f"No notifier available, skipping: {title} - {message}")
        return False

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning(f"Notification failed: {error}")
        return False

    if result.returncode != 0:
        logger.warning(f"Notification command failed: {result.stderr.strip()}")
        return False
    return True


def format_new_email_notification(emails: List[EmailMessage]) -> Optional[dict]:
    """Title and message summarising new mail, None for an empty list"""
    if not emails:
        return None

    count = len(emails)
    unique_senders = list(dict.fromkeys(extract_sender_name(e.sender) for e in emails))
    message = f"From: {', '.join(unique_senders[:PREVIEW_SENDERS])}"
    if len(unique_senders) > PREVIEW_SENDERS:
        message += f", and {len(unique_senders) - PREVIEW_SENDERS} others"

    return {
        'title': f"{count} New Email{'' if count == 1 else 's'}",
        'message': message,
        'subtitle': APP_NAME,
    }


def notify_new_emails(emails: List[EmailMessage]) -> bool:
    notification = format_new_email_notification(emails)
    if notification is None:
        return False
    return notify(**notification)
