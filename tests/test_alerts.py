from unittest import mock

import requests

from table_replication.alerts import (
    EMBED_DESCRIPTION_LIMIT,
    fatal_pass_message,
    replication_payload,
    send_discord_alert,
)
from table_replication.coordinator import PassResult

HOOK = "https://discord.example/hook"


def test_payload_is_a_red_embed_with_clipped_description():
    payload = replication_payload("x" * (EMBED_DESCRIPTION_LIMIT + 50))
    embed = payload["embeds"][0]
    assert payload["content"] == "Table replication stopped"
    assert embed["color"] == 0xD32F2F
    assert len(embed["description"]) <= EMBED_DESCRIPTION_LIMIT
    assert embed["description"].endswith("(truncated)")


def test_fatal_pass_message_names_the_leftover_table():
    result = PassResult("src.users", "public.users", "rename", temp_name="public.users_copy_0042",
                        error="PromotionError: boom", fatal=True)
    message = fatal_pass_message(result)
    assert "public.users_copy_0042" in message
    assert "public.users" in message and "rename" in message
    assert "PromotionError: boom" in message


def test_missing_webhook_skips():
    with mock.patch("table_replication.alerts.requests.post") as post:
        assert send_discord_alert("hi", "") is False
    post.assert_not_called()


def test_successful_post():
    with mock.patch("table_replication.alerts.requests.post") as post:
        post.return_value.status_code = 204
        assert send_discord_alert("hi", HOOK, title="Replication failed") is True
    payload = post.call_args.kwargs["json"]
    assert payload["embeds"][0]["description"] == "hi"
    assert payload["embeds"][0]["title"] == "Replication failed"
    assert post.call_args.kwargs["timeout"] == 10


def test_http_errors_are_logged_not_raised():
    with mock.patch("table_replication.alerts.requests.post") as post:
        post.return_value.status_code = 500
        post.return_value.text = "oops"
        assert send_discord_alert("hi", HOOK) is False
        post.side_effect = requests.ConnectionError("down")
        assert send_discord_alert("hi", HOOK) is False
