"""Filesystem layout and defaults shared with the rc.d boot script.

These paths are a contract: the boot script installed on every host reads
the same locations, so changing one here requires changing it there.
"""

# Root of all bsdeploy state on remote hosts
BSDEPLOY_BASE = "/usr/local/bsdeploy"
BASE_DIR = f"{BSDEPLOY_BASE}/base"
IMAGES_DIR = f"{BSDEPLOY_BASE}/images"
JAILS_DIR = f"{BSDEPLOY_BASE}/jails"
ACTIVE_DIR = f"{BSDEPLOY_BASE}/active"
LOCK_DIR = f"{BSDEPLOY_BASE}/.lock"

# Cache readiness markers
READY_SNAPSHOT = "ready"
READY_MARKER = ".bsdeploy-ready"

# Networking
DEFAULT_IP_RANGE = "10.0.0.0/24"
LOOPBACK_INTERFACE = "lo1"

# Paths inside jails
JAIL_ENV_FILE = "/etc/bsdeploy.env"
JAIL_APP_DIR = "/app"
METADATA_FILE = ".bsdeploy.json"

# Host-side service directories
APP_DATA_DIR = "/var/db/bsdeploy"
CONFIG_DIR = "/usr/local/etc/bsdeploy"
RUN_DIR = "/var/run/bsdeploy"
LOG_DIR = "/var/log/bsdeploy"

# Caddy
CADDY_CONF_DIR = "/usr/local/etc/caddy/conf.d"
CADDYFILE_PATH = "/usr/local/etc/caddy/Caddyfile"
CADDY_CERTS_DIR = "/usr/local/etc/caddy/certs"

RCD_SCRIPT_PATH = "/usr/local/etc/rc.d/bsdeploy"

DEFAULT_ZFS_POOL = "zroot"
BASE_RELEASE_URL = "https://download.freebsd.org/ftp/releases/{arch}/{version}/base.txz"

# Number of jails per service kept on a host, the newest one included
JAILS_TO_KEEP = 3

# Layering: read-only subtrees mounted from the base system
ROOT_RO_DIRS = ("bin", "lib", "libexec", "sbin")
USR_RO_DIRS = ("bin", "include", "lib", "lib32", "libdata", "libexec", "sbin", "share")

# Writable subtrees copied from an image into each jail
JAIL_RW_DIRS = ("etc", "var", "root", "home")

# Writable subtrees copied from the base system (no image)
BASE_RW_DIRS = ("etc", "var", "root", "tmp")

# Timeouts in seconds
DEFAULT_TIMEOUT = 1800
INSPECT_TIMEOUT = 120
SYNC_TIMEOUT = 900

# Graceful stop of old service processes
STOP_POLL_INTERVAL = 0.5
STOP_MAX_POLLS = 20
