"""Summary: JSON-over-HTTP helper shared by provider implementations.

Importance: Every outbound call gets a bounded timeout and a consistent error mapping.
Alternatives: Use requests or a provider SDK per integration.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from agendapilot.errors import ConfigurationError, TransientProviderError


def send_json_request(
    service: str,
    method: str,
    url: str,
    timeout: float,
    access_token: str | None = None,
    payload: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Summary: Send a request and decode the JSON response.

    Importance: Timeouts, 429s, and 5xx responses raise TransientProviderError;
    401 and 403 raise ConfigurationError since retrying cannot fix credentials.
    Alternatives: Let each provider interpret urllib errors itself.
    """

    if params:
        url = f"{url}?{urllib.parse.urlencode(params, doseq=True)}"
    headers = {"Accept": "application/json"}
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    request = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        detail = error_body or str(exc.reason)
        if exc.code in (401, 403):
            raise ConfigurationError(f"{service} rejected credentials: {detail}") from exc
        if exc.code == 429 or exc.code >= 500:
            raise TransientProviderError(service, detail, status_code=exc.code) from exc
        raise RuntimeError(f"{service} request failed ({exc.code}): {detail}") from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise TransientProviderError(service, f"request failed: {exc}") from exc
    if not raw:
        return {}
    return json.loads(raw)
