from resilient_ollama.logging import REDACTED, make_redaction_processor


def test_redacts_known_secret_and_bearer_tokens():
    proc = make_redaction_processor(["sk-local-123456"])
    out = proc(
        None,
        "info",
        {
            "event": "ollama_http_error",
            "body": "rejected key sk-local-123456",
            "headers": {"Authorization": "Bearer abcdef123456", "accept": "application/json"},
            "note": "sent Bearer zzzzzzzzzz",
        },
    )
    assert out["event"] == "ollama_http_error"
    assert out["body"] == f"rejected key {REDACTED}"
    assert out["headers"] == {"Authorization": REDACTED, "accept": "application/json"}
    assert out["note"] == f"sent Bearer {REDACTED}"


def test_redacts_key_like_fields_and_keeps_exc_info():
    err = RuntimeError("boom")
    proc = make_redaction_processor()
    out = proc(None, "error", {"event": "x", "api_key": "abc", "exc_info": err, "attempt": 2})
    assert out["api_key"] == REDACTED
    assert out["exc_info"] is err
    assert out["attempt"] == 2
