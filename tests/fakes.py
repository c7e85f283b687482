"""
Test doubles for outbound HTTP and time.
"""

from __future__ import annotations

import json

import requests


def make_response(status: int = 200, payload=None, text: str = None,
                  content_type: str = "application/json") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.reason = "OK" if status < 400 else "Error"
    response.encoding = "utf-8"
    response.headers["content-type"] = content_type
    if text is not None:
        response._content = text.encode()
    elif payload is not None:
        response._content = json.dumps(payload).encode()
    else:
        response._content = b""
    return response


class FakeSession:
    """Records requests and replays queued responses (or raises queued exceptions)"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, "timeout": timeout, **kwargs})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now
