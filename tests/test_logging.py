from webhook_relay.logging_config import redact_secrets_processor, replace_newlines_processor


def test_multiline_values_are_flattened():
    event = {
        "event": "delivery resolved",
        "error": "HTTP 500:\nInternal\tError",
        "tried": ["/a\n", 1],
        "extra": {"body": "x\r\ny"},
    }

    result = replace_newlines_processor(None, "info", event)

    assert result["error"] == "HTTP 500:\\nInternal\\tError"
    assert result["tried"] == ["/a\\n", 1]
    assert result["extra"] == {"body": "x\\r\\ny"}


def test_tokens_are_redacted():
    event = {"event": "sink configured", "sink_token": "demo-token", "url": "https://httpbin.org/post"}

    result = redact_secrets_processor(None, "info", event)

    assert result["sink_token"] == "***"
    assert result["url"] == "https://httpbin.org/post"
