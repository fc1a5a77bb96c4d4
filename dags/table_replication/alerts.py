import logging
from typing import Any, Dict, Optional

import requests

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000            # message content
EMBED_DESCRIPTION_LIMIT = 4096  # embed description
ALERT_COLOR = 0xD32F2F


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 16] + "\n… (truncated)"


def fatal_pass_message(result) -> str:
    """Alert body for a pass that left the destination without its live table."""
    return (
        f"Table replication left **{result.destination}** inconsistent "
        f"({result.strategy} strategy, source {result.source}).\n"
        f"Previous data kept as `{result.temp_name}`.\n"
        f"Error: {result.error}"
    )


def replication_payload(message: str, title: str = "Table replication stopped",
                        username: str = "table-replication") -> Dict[str, Any]:
    return {
        "username": username,
        "content": _clip(title, DISCORD_LIMIT),
        "embeds": [{
            "title": title,
            "description": _clip(message, EMBED_DESCRIPTION_LIMIT),
            "color": ALERT_COLOR,
        }],
    }


def send_discord_alert(message: str, webhook_url: Optional[str], title: str = "Table replication stopped") -> bool:
    """Post a replication alert; returns whether Discord accepted it. Delivery problems are only logged."""
    if not webhook_url:
        log.warning("DISCORD_WEBHOOK not set; replication alert not sent: %s", message)
        return False

    try:
        response = requests.post(webhook_url, json=replication_payload(message, title), timeout=10)
    except requests.RequestException:
        log.exception("Replication alert could not be delivered")
        return False

    # 204 normally, 200 with ?wait=true
    if response.status_code in (200, 204):
        log.info("Replication alert delivered (%s)", response.status_code)
        return True
    log.error("Replication alert rejected: status=%s body=%s", response.status_code, response.text)
    return False
