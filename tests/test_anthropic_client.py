import base64
import unittest

import requests

from photo_crawler.anthropic_client import ANTHROPIC_VERSION, AnthropicClient, first_text_block
from photo_crawler.errors import APIError, NoContentError, TransportError


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def client(session):
    return AnthropicClient(
        "sk-test",
        "claude-sonnet-4-20250514",
        base_url="https://api.anthropic.com/v1/messages",
        timeout=120.0,
        max_tokens=4096,
        session=session,
    )


def complete(c):
    return c.complete(system_prompt="sys", user_prompt="user", image_bytes=b"\x89PNG", media_type="image/png")


class AnthropicClientTests(unittest.TestCase):
    def test_request_shape(self):
        session = FakeSession(FakeResponse(200, {"content": [{"type": "text", "text": '{"title": "x"}'}]}))
        text = complete(client(session))

        self.assertEqual(text, '{"title": "x"}')
        self.assertEqual(session.headers["x-api-key"], "sk-test")
        self.assertEqual(session.headers["anthropic-version"], ANTHROPIC_VERSION)
        post = session.posts[0]
        self.assertEqual(post["timeout"], 120.0)
        payload = post["json"]
        self.assertEqual(payload["model"], "claude-sonnet-4-20250514")
        self.assertEqual(payload["max_tokens"], 4096)
        self.assertEqual(payload["system"], "sys")
        image, prompt = payload["messages"][0]["content"]
        self.assertEqual(image["source"]["media_type"], "image/png")
        self.assertEqual(base64.b64decode(image["source"]["data"]), b"\x89PNG")
        self.assertEqual(prompt, {"type": "text", "text": "user"})

    def test_http_error_carries_api_message(self):
        session = FakeSession(FakeResponse(401, {"error": {"type": "authentication_error", "message": "invalid x-api-key"}}))
        with self.assertRaises(APIError) as ctx:
            complete(client(session))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("invalid x-api-key", str(ctx.exception))

    def test_http_error_without_body(self):
        with self.assertRaises(APIError) as ctx:
            complete(client(FakeSession(FakeResponse(529))))
        self.assertEqual(str(ctx.exception), "HTTP error: 529")

    def test_network_errors_become_transport_errors(self):
        for error in (requests.exceptions.ConnectionError("refused"), requests.exceptions.Timeout("slow")):
            with self.assertRaises(TransportError):
                complete(client(FakeSession(error=error)))

    def test_non_json_success_body(self):
        with self.assertRaises(TransportError):
            complete(client(FakeSession(FakeResponse(200))))

    def test_no_text_block(self):
        session = FakeSession(FakeResponse(200, {"content": [{"type": "tool_use", "id": "x"}]}))
        with self.assertRaises(NoContentError):
            complete(client(session))

    def test_first_text_block(self):
        self.assertIsNone(first_text_block({}))
        self.assertEqual(first_text_block({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}), "a")


if __name__ == "__main__":
    unittest.main()
