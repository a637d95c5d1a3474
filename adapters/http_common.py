#Description: Base HTTP adapter shared by the quote, broker and wallet clients.

import httpx


class HttpAdapter:
    BASE_URL = ""

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float = 10.0,
                 client: httpx.Client | None = None):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=timeout)

    def _headers(self):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def get(self, path: str, params: dict | None = None):
        r = self.client.get(self.base_url + path, params=params, headers=self._headers())
        r.raise_for_status()
        return r.json()

    def post(self, path: str, payload: dict):
        r = self.client.post(self.base_url + path, headers=self._headers(), json=payload)
        r.raise_for_status()
        return r.json()

    def close(self):
        self.client.close()
