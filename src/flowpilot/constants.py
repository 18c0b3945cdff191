"""Shared constants for FlowPilot."""

import os
from pathlib import Path


HOME_DIR = Path(os.getenv("FLOWPILOT_HOME", str(Path.home() / ".flowpilot")))
LOG_DIR = HOME_DIR / "logs"
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "flowpilot.db"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9890
API_BASE = os.getenv("FLOWPILOT_API", f"http://{SERVER_HOST}:{SERVER_PORT}")
LOG_LEVEL = os.getenv("FLOWPILOT_LOG_LEVEL", "INFO")

# Platform gateway that owns channels, agents and contacts.
GATEWAY_URL = os.getenv("FLOWPILOT_GATEWAY_URL", "http://127.0.0.1:3000/api")
GATEWAY_TOKEN = os.getenv("FLOWPILOT_GATEWAY_TOKEN")
GATEWAY_TIMEOUT = float(os.getenv("FLOWPILOT_GATEWAY_TIMEOUT", "30"))

HTTP_NODE_TIMEOUT = float(os.getenv("FLOWPILOT_HTTP_NODE_TIMEOUT", "10"))
MAX_STEPS_PER_RUN = int(os.getenv("FLOWPILOT_MAX_STEPS", "200"))
TIMER_POLL_SECONDS = int(os.getenv("FLOWPILOT_TIMER_POLL_SECONDS", "15"))
BUSINESS_TIMEZONE = os.getenv("FLOWPILOT_TIMEZONE", "UTC")

# Resume event ids remembered per run for redelivery checks.
SEEN_EVENT_IDS_KEPT = 50
