# Point LOGSHIP_CONFIG at a copy of this file.

LOG_ROOTS = [
	{"path": "/var/log/app", "tag": "app"},
	{"path": "/var/log/mssql", "tag": "mssql"},
]
MAX_DEPTH = 2

ARCHIVE_ROOTS = [
	"/var/log/app/archive",
]
ARCHIVE_MAX_DEPTH = 2

STATE_DIR = "/var/lib/logship"

BATCH_FILES = 3
BATCH_BYTES = 100 * 1024 * 1024

FORWARD_HOST = "logs.example.com"
FORWARD_PORT = 443
FORWARD_STREAM = "app"
FORWARD_TOKEN = ""

ENVIRONMENT = "staging"
TRANSPORT = "debug"
