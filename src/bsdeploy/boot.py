"""Boot persistence for active jails.

Jails, nullfs mounts and lo1 aliases do not survive a host reboot. After
each successful cutover the active jail gets a JSON metadata sidecar and
ACTIVE_DIR/<service> is pointed at its root. The rc.d script installed by
setup walks ACTIVE_DIR at boot and rebuilds each jail from its metadata
without re-running the deploy pipeline.

Public API:
    JailMetadata: Sidecar written into each active jail root
    BootPersistence: Install the rc.d script and maintain active links
"""

import json
import logging
from dataclasses import asdict, dataclass, field

from bsdeploy.constants import (
    ACTIVE_DIR,
    BASE_DIR,
    LOG_DIR,
    METADATA_FILE,
    RCD_SCRIPT_PATH,
    RUN_DIR,
)
from bsdeploy.jail import DataBinding
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.shell import quote

logger = logging.getLogger(__name__)


def pid_file(service: str, index: int = 0) -> str:
    """PID file path inside the jail for the index-th start command."""
    suffix = "" if index == 0 else f"-{index}"
    return f"{RUN_DIR}/{service}/service{suffix}.pid"


def log_file(service: str, index: int = 0) -> str:
    suffix = "" if index == 0 else f"-{index}"
    return f"{LOG_DIR}/{service}/service{suffix}.log"


@dataclass
class JailMetadata:
    """Everything the boot script needs to bring a jail back."""

    jail_name: str
    ip: str
    service: str
    base_version: str
    user: str | None = None
    image_path: str | None = None
    zfs: bool = False
    data_directories: list[dict[str, str]] = field(default_factory=list)
    start_commands: list[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        jail_name: str,
        ip: str,
        service: str,
        base_version: str,
        user: str | None,
        image_path: str | None,
        zfs: bool,
        data_bindings: tuple[DataBinding, ...] | list[DataBinding],
        start_commands: tuple[str, ...] | list[str],
    ) -> "JailMetadata":
        return cls(
            jail_name=jail_name,
            ip=ip,
            service=service,
            base_version=base_version,
            user=user,
            image_path=image_path,
            zfs=zfs,
            data_directories=[b.to_dict() for b in data_bindings],
            start_commands=list(start_commands),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2) + "\n"

    @classmethod
    def from_json(cls, raw: str) -> "JailMetadata":
        data = json.loads(raw)
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


RCD_SCRIPT = f"""#!/bin/sh

# PROVIDE: bsdeploy
# REQUIRE: NETWORKING
# BEFORE: caddy
# KEYWORD: shutdown

. /etc/rc.subr

name="bsdeploy"
rcvar="bsdeploy_enable"
start_cmd="${{name}}_start"
stop_cmd="${{name}}_stop"
status_cmd="${{name}}_status"
extra_commands="status"

ACTIVE_DIR="{ACTIVE_DIR}"
BASE_DIR="{BASE_DIR}"
RUN_DIR="{RUN_DIR}"
LOG_DIR="{LOG_DIR}"
JQ="/usr/local/bin/jq"

bsdeploy_mount_jail()
{{
    local jail_path="$1" metadata="$2"
    local base_dir="$BASE_DIR/$($JQ -r '.base_version' "$metadata")"
    local image_path=$($JQ -r '.image_path // empty' "$metadata")

    mkdir -p "$jail_path/dev"
    mount -t devfs devfs "$jail_path/dev"

    if [ "$($JQ -r '.zfs' "$metadata")" != "true" ]; then
        for dir in bin lib libexec sbin; do
            [ -d "$base_dir/$dir" ] && mount_nullfs -o ro "$base_dir/$dir" "$jail_path/$dir"
        done
        for dir in bin include lib lib32 libdata libexec sbin share; do
            [ -d "$base_dir/usr/$dir" ] && \\
                mount_nullfs -o ro "$base_dir/usr/$dir" "$jail_path/usr/$dir"
        done
        if [ -n "$image_path" ] && [ -d "$image_path/usr/local" ]; then
            mount_nullfs -o ro "$image_path/usr/local" "$jail_path/usr/local"
        fi
    fi

    $JQ -r '.data_directories[]? | "\\(.host_path)\\t\\(.jail_path)"' "$metadata" | \\
    while IFS="$(printf '\\t')" read -r host_path target; do
        [ -n "$host_path" ] || continue
        mkdir -p "$host_path" "$jail_path$target"
        mount_nullfs "$host_path" "$jail_path$target"
    done
}}

bsdeploy_start_processes()
{{
    local jail_name="$1" jail_path="$2" metadata="$3"
    local service=$($JQ -r '.service' "$metadata")
    local user=$($JQ -r '.user // empty' "$metadata")
    local daemon_user=""

    for dir in "$RUN_DIR/$service" "$LOG_DIR/$service"; do
        mkdir -p "$jail_path$dir"
        [ -n "$user" ] && jexec "$jail_name" chown "$user:$user" "$dir"
    done
    [ -n "$user" ] && daemon_user="-u $user"

    $JQ -r '.start_commands[]' "$metadata" | {{
        idx=0
        while IFS= read -r start_cmd; do
            [ -n "$start_cmd" ] || continue
            if [ "$idx" -eq 0 ]; then suffix=""; else suffix="-$idx"; fi
            jexec "$jail_name" daemon -f \\
                -p "$RUN_DIR/$service/service$suffix.pid" \\
                -o "$LOG_DIR/$service/service$suffix.log" $daemon_user \\
                bash -c "source /etc/bsdeploy.env && cd /app && $start_cmd"
            idx=$((idx + 1))
        done
    }}
}}

bsdeploy_start()
{{
    echo "Starting bsdeploy jails..."
    ifconfig lo1 > /dev/null 2>&1 || ifconfig lo1 create

    for link in "$ACTIVE_DIR"/*; do
        [ -L "$link" ] || continue
        jail_path=$(readlink -f "$link")
        metadata="$jail_path/{METADATA_FILE}"
        [ -f "$metadata" ] || continue

        jail_name=$($JQ -r '.jail_name' "$metadata")
        ip=$($JQ -r '.ip' "$metadata")
        echo "  $jail_name ($ip)"

        ifconfig lo1 inet "$ip/32" alias
        bsdeploy_mount_jail "$jail_path" "$metadata"
        jail -c name="$jail_name" path="$jail_path" host.hostname="$jail_name" \\
            ip4.addr="$ip" allow.raw_sockets=1 persist
        bsdeploy_start_processes "$jail_name" "$jail_path" "$metadata"
    done
}}

bsdeploy_stop()
{{
    echo "Stopping bsdeploy jails..."

    for link in "$ACTIVE_DIR"/*; do
        [ -L "$link" ] || continue
        jail_path=$(readlink -f "$link")
        metadata="$jail_path/{METADATA_FILE}"
        [ -f "$metadata" ] || continue

        jail_name=$($JQ -r '.jail_name' "$metadata")
        ip=$($JQ -r '.ip' "$metadata")
        echo "  $jail_name"

        jail -r "$jail_name" 2>/dev/null
        ifconfig lo1 inet "$ip" -alias 2>/dev/null
        mounts=$(mount | awk -v root="$jail_path" \\
            '$3 == root || index($3, root "/") == 1 {{print $3}}' | sort -r)
        for mnt in $mounts; do
            umount -f "$mnt"
        done
    done
}}

bsdeploy_status()
{{
    for link in "$ACTIVE_DIR"/*; do
        [ -L "$link" ] || continue
        service=$(basename "$link")
        metadata="$(readlink -f "$link")/{METADATA_FILE}"
        if [ ! -f "$metadata" ]; then
            echo "  $service: BROKEN (missing metadata)"
            continue
        fi
        jail_name=$($JQ -r '.jail_name' "$metadata")
        if jls -j "$jail_name" > /dev/null 2>&1; then
            echo "  $service: RUNNING ($jail_name, $(jls -j "$jail_name" ip4.addr))"
        else
            echo "  $service: STOPPED ($jail_name)"
        fi
    done
}}

load_rc_config $name
run_rc_command "$1"
"""


class BootPersistence:
    """Install the boot script and maintain active-service links on a host."""

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    def install_script(self) -> None:
        self.executor.write_file(RCD_SCRIPT, RCD_SCRIPT_PATH, privileged=True)
        self.executor.run(f"chmod +x {RCD_SCRIPT_PATH}", privileged=True)

    def enable(self) -> None:
        self.executor.run("sysrc bsdeploy_enable=YES", privileged=True)

    def ensure_active_dir(self) -> None:
        self.executor.run(f"mkdir -p {ACTIVE_DIR}", privileged=True)

    def install(self) -> None:
        """Install and enable the rc.d script."""
        self.install_script()
        self.enable()
        self.ensure_active_dir()

    def write_metadata(self, jail_root: str, metadata: JailMetadata) -> None:
        self.executor.write_file(
            metadata.to_json(), f"{jail_root}/{METADATA_FILE}", privileged=True
        )

    def activate(self, service: str, jail_root: str) -> None:
        """Point the service's active link at jail_root."""
        self.ensure_active_dir()
        self.executor.run(
            f"ln -sfn {quote(jail_root)} {quote(f'{ACTIVE_DIR}/{service}')}", privileged=True
        )
        logger.debug(f"Active jail for {service} is now {jail_root}")

    def active_jail(self, service: str) -> str | None:
        """Get the jail name the service's active link points at."""
        link = quote(f"{ACTIVE_DIR}/{service}")
        if not self.executor.succeeds(f"test -L {link}"):
            return None
        target = self.executor.run_capture(f"readlink {link}").strip()
        return target.rstrip("/").rsplit("/", 1)[-1] or None

    def deactivate(self, service: str) -> None:
        self.executor.run(f"rm -f {quote(f'{ACTIVE_DIR}/{service}')}", privileged=True)


__all__ = [
    "BootPersistence",
    "JailMetadata",
    "RCD_SCRIPT",
    "log_file",
    "pid_file",
]
