# Ensure consistent SSL certificate verification using certifi's CA bundle.
import os

import certifi
import pytest

# Use certifi for OpenSSL-based libraries (httpx, websockets, etc.).
os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())


@pytest.fixture(autouse=True)
def _paper_only(monkeypatch):
    """〔このフィクスチャがすること〕 テスト中は必ず paper（GO/秘密鍵は .env から読まれても無効化）。"""
    monkeypatch.setenv("DRY_RUN", "true")
    monkeypatch.delenv("GO", raising=False)
    yield
