"""
Domain Constants: values shared by the daemon, the client and the codec.

The working directory layout is the one the host add-on installs:

    <base_dir>/
    ├── addons/<addon>.ini        # proves this daemon serves <addon>
    ├── addons/<addon>.launch     # host menu entries (manual form picker)
    ├── addons/<addon>/Aoclient.exe
    ├── bin/server.yaml           # delivery endpoint settings
    ├── pack-it-forms/            # static form templates
    │   └── msgs/                 # temporary message files
    ├── logs/server-port.txt      # port advertisement
    └── saved/form-<port>-<id>.json
"""

# =============================================================================
# Working Directory Layout
# =============================================================================

ADDONS_DIR = "addons"
FORMS_DIR = "pack-it-forms"
FORMS_MSGS_DIR = "pack-it-forms/msgs"
FORMS_INCLUDES_DIR = "pack-it-forms/resources/html"
LOG_DIR = "logs"
SAVE_DIR = "saved"
PORT_FILENAME = "server-port.txt"
SETTINGS_FILENAME = "bin/server.yaml"
CONFIG_FILENAME = "default.yaml"
OPD_FAIL_FILENAME = "OpdFAIL"
CLI_PROGRAM_NAME = "Aoclient.exe"

# =============================================================================
# Network
# =============================================================================

LOCALHOST = "127.0.0.1"
CHARSET = "utf-8"
EOL = "\r\n"

OPEN_ROUTE = "/openOutpostMessage"
STOP_ROUTE = "/stopSCCoPIFO"

HTTP_OK = 200
SEE_OTHER = 303
MISDIRECTED_REQUEST = 421

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# =============================================================================
# Timing (seconds)
# =============================================================================

SWEEP_INTERVAL_SECONDS = 5
QUIET_LIMIT_SECONDS = 300
IDLE_SHUTDOWN_SECONDS = 48 * 60 * 60
SNAPSHOT_RETENTION_SECONDS = 7 * 24 * 60 * 60
STARTUP_SAVE_GRACE_SECONDS = 60
LOG_RETENTION_DAYS = 7
SUBMIT_TIMEOUT_SECONDS = 30

# =============================================================================
# Discovery Protocol
# =============================================================================

OPEN_MAX_RETRIES = 6
OPEN_RETRY_DELAY_SECONDS = 1.0
SPAWN_ON_RETRIES = (1, 4)

# =============================================================================
# Sessions
# =============================================================================

RESERVED_SESSION_ID = "0"
READONLY_MODE = "readonly"

# Host placeholders that mean "no value".
UNEXPANDED_PLACEHOLDERS = ("COPY_NAMES", "MSG_INDEX", "MSG_STATE", "SPOOL_DIR")

# =============================================================================
# Host Message Format
# =============================================================================

END_OF_ADDON = "!/ADDON!"
HANDLING_FIELD = "5."
DEFAULT_HANDLING = "R"
URGENT_HANDLING = ("IMMEDIATE", "I")

SUBJECT_PREFIX_META = "pack-it-forms-subject-prefix"
SUBJECT_SUFFIX_META = "pack-it-forms-subject-suffix"
DEFAULT_SUBJECT_PREFIX = "{{field:MsgNo}}_{{field:5.handling}}"
DEFAULT_SUBJECT_SUFFIX = "_{{field:10.subject}}"

# =============================================================================
# Delivery Endpoint Protocol
# =============================================================================

LEGACY_SUCCESS_PHRASE = "Your PacFORMS submission was successful!"
RETURN_CODE_META = "OpDirectReturnCode"
END_MARKER_PARAM = "4VAO"
END_MARKER_VALUE = "\r\n#EOF"
FORM_URLENCODED = "application/x-www-form-urlencoded"
