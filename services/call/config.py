"""Call Service Configuration."""
import os
import tempfile
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from service directory
service_dir = Path(__file__).parent
env_file = service_dir / ".env"
if env_file.exists():
    load_dotenv(env_file)

# Service Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3001"))
SERVICE_NAME = os.getenv("SERVICE_NAME", "call")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_ENV = os.getenv("APP_ENV", "development")

# Record log location: working directory in development, temp dir in production
_default_records_dir = tempfile.gettempdir() if APP_ENV == "production" else os.getcwd()
RECORDS_FILE = os.getenv("RECORDS_FILE", os.path.join(_default_records_dir, "call_records.json"))

# Push channel
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "30"))
WS_PING_INTERVAL = float(os.getenv("WS_PING_INTERVAL", "25"))
WS_PING_TIMEOUT = float(os.getenv("WS_PING_TIMEOUT", "120"))

# Optional self-ping to keep a sleep-prone host awake
KEEP_ALIVE_URL = os.getenv("KEEP_ALIVE_URL", "")
KEEP_ALIVE_INTERVAL = float(os.getenv("KEEP_ALIVE_INTERVAL", "600"))
