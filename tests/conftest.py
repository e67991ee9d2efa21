import os
import sys


def _ensure_repo_on_path() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if root not in sys.path:
        sys.path.append(root)


_ensure_repo_on_path()
os.environ.setdefault("OPENAI_API_KEY", "test")
# Keep retries/backoff tiny so failure-path tests stay fast
os.environ.setdefault("RETRY_BASE_DELAY_MS", "1")
os.environ.setdefault("RETRY_MAX_DELAY_MS", "2")
os.environ.setdefault("WHATSAPP_CHECK_DELAY_S", "0")
