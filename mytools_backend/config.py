from __future__ import annotations

import os


# Remote conversion service. Each preset appends its own path.
# Override with env var MYTOOLS_CONVERT_BASE_URL.
CONVERT_BASE_URL = os.environ.get("MYTOOLS_CONVERT_BASE_URL", "http://localhost:8080").rstrip("/")

# Remote image generation endpoint (predict-style JSON API).
GENERATE_URL = os.environ.get(
    "MYTOOLS_GENERATE_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/imagen-3.0-generate-002:predict",
)
# Sent as ?key=... when set; never hardcode keys here.
GENERATE_API_KEY = os.environ.get("MYTOOLS_GENERATE_API_KEY", "")

# No timeout is mandated; a timeout surfaces as a RemoteError.
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("MYTOOLS_REQUEST_TIMEOUT_SECONDS", "60"))

# How long an idle session may live before its previews are released.
TTL_HOURS = float(os.environ.get("MYTOOLS_TTL_HOURS", "1"))

# How often the server scans for expired sessions.
CLEANUP_INTERVAL_SECONDS = int(os.environ.get("MYTOOLS_CLEANUP_INTERVAL_SECONDS", "300"))

# Upload limits (best-effort; also enforced by proxy/browser typically).
MAX_UPLOAD_BYTES = int(os.environ.get("MYTOOLS_MAX_UPLOAD_BYTES", str(25 * 1024 * 1024)))  # 25MB per file
MAX_UPLOAD_FILES = int(os.environ.get("MYTOOLS_MAX_UPLOAD_FILES", "50"))

# Preview URLs are served under /s/<session_id>/p/<handle_id>.
PREVIEW_ROUTE_PREFIX = "/s"
