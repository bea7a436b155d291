"""Global constants for elx."""

# Port defaults for development servers

PROXY_PORT = 8000
BUNDLER_PORT = 8001

# URL/Routing defaults
DEFAULT_HOST = "localhost"
DEFAULT_RELOAD_PATH = "esbuild"
DEFAULT_HTML_ENTRY_POINT = "index.html"
EVENT_STREAM_CONTENT_TYPE = "text/event-stream"

# Runtime configuration handed to the host process
RENDERER_URL_ENV = "ELX_RENDERER_URL"

# Build state lives in a project-local directory
STATE_DIR_NAME = ".elx"
MANIFEST_FILE_NAME = "manifest.json"
RENDERER_METAFILE_NAME = "renderer-meta.json"

CONFIG_FILE_NAMES = ("elx.yml", "elx.yaml")

# Retry configuration
DEFAULT_MAX_RETRIES = 10

# Seconds a superseded host process gets before its tree is force-killed
HOST_TERMINATE_GRACE = 3.0
