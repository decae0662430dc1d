"""Thin HTTP client for the upload review API.

    client = UploadReviewClient("http://localhost:8000", "token", "me@example.com")
    upload = client.upload_file("report.pdf", data)
    client.approve_upload(upload["id"])
"""
from typing import Any, Dict, Optional

import httpx

API_PREFIX = "/api/v1"


class ClientError(Exception):
    def __init__(self, status_code: int, error: str, message: str):
        super().__init__(f"{status_code} {error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message


class UploadReviewClient:
    def __init__(
        self,
        base_url: str,
        auth_token: str,
        user_email: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {auth_token}", "X-User-Email": user_email},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "UploadReviewClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, expected: int = 200, **kwargs) -> Dict[str, Any]:
        resp = self._client.request(method, path, **kwargs)
        if resp.status_code != expected:
            raise _parse_error(resp)
        return resp.json()

    def upload_file(self, file_name: str, data: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
        files = {"file": (file_name, data, content_type or "application/octet-stream")}
        return self._request("POST", f"{API_PREFIX}/uploads", expected=202, files=files)

    def get_upload_status(self, upload_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{API_PREFIX}/uploads/{upload_id}")

    def list_uploads(
        self,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: Optional[str] = None,
        sort_dir: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {"page": page, "page_size": page_size}
        if status:
            params["status"] = status
        if sort_by:
            params["sort_by"] = sort_by
        if sort_dir:
            params["sort_dir"] = sort_dir
        return self._request("GET", f"{API_PREFIX}/uploads", params=params)

    def approve_upload(self, upload_id: str) -> Dict[str, Any]:
        return self._request("POST", f"{API_PREFIX}/uploads/{upload_id}/approve")

    def reject_upload(self, upload_id: str, reason: str) -> Dict[str, Any]:
        return self._request("POST", f"{API_PREFIX}/uploads/{upload_id}/reject", json={"reason": reason})

    def purge_cache(self, upload_id: str) -> Dict[str, Any]:
        return self._request("POST", f"{API_PREFIX}/uploads/{upload_id}/purge-cache")

    def list_audit_logs(
        self,
        upload_id: Optional[str] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Dict[str, Any]:
        params = {"page": page, "page_size": page_size}
        if upload_id:
            params["upload_id"] = upload_id
        if action:
            params["action"] = action
        if user_id:
            params["user_id"] = user_id
        return self._request("GET", f"{API_PREFIX}/audit-logs", params=params)

    def health_check(self) -> Dict[str, Any]:
        resp = self._client.get("/health")
        # 503 still carries the per-dependency report
        if resp.status_code not in (200, 503):
            raise _parse_error(resp)
        return resp.json()


def _parse_error(resp: httpx.Response) -> ClientError:
    try:
        body = resp.json()
    except ValueError:
        return ClientError(resp.status_code, "http_error", resp.text)

    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        body = body["detail"]
    if not isinstance(body, dict):
        return ClientError(resp.status_code, "http_error", str(body))
    return ClientError(
        resp.status_code,
        str(body.get("error", "http_error")),
        str(body.get("message", body.get("detail", ""))),
    )
