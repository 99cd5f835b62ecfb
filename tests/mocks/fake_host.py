"""
Simulated FreeBSD host for testing.

FakeHost stands in for RemoteExecutor. It records every command and keeps
just enough state (directories, files, ZFS datasets and snapshots, mounts,
lo1 aliases, running jails, symlinks) for the jail, image and deploy code
paths to observe the effects of their own commands.
"""

import shlex
from pathlib import Path

from bsdeploy.constants import (
    BASE_DIR,
    BSDEPLOY_BASE,
    IMAGES_DIR,
    JAILS_DIR,
    ROOT_RO_DIRS,
    USR_RO_DIRS,
)
from bsdeploy.exceptions import RemoteExecError
from bsdeploy.remote_exec import RemoteResult

# Directories a fetched base.txz provides
BASE_TREE = (
    *ROOT_RO_DIRS,
    *(f"usr/{d}" for d in USR_RO_DIRS if d != "lib32"),
    "etc",
    "var",
    "var/empty",
    "root",
    "tmp",
)


class FakeHost:
    """In-memory remote host.

    Args:
        host: Hostname reported in results and errors
        zfs: Start with a ZFS root and the bsdeploy datasets in place
        release: Output of uname -r
    """

    def __init__(self, host: str = "bsd1", zfs: bool = False, release: str = "14.1-RELEASE-p6"):
        self.host = host
        self.use_doas = False
        self.release = release
        self.commands: list[str] = []
        self.syncs: list[dict] = []
        self.dirs: set[str] = {"/", "/etc", "/usr", "/usr/local"}
        self.files: dict[str, str] = {"/etc/resolv.conf": "nameserver 1.1.1.1\n"}
        self.links: dict[str, str] = {}
        self.datasets: dict[str, str] = {}
        self.snapshots: set[str] = set()
        # Datasets whose filesystem is not currently mounted
        self.unmounted: set[str] = set()
        self.mounts: list[tuple[str, str]] = []
        self.aliases: set[str] = set()
        self.interface = False
        self.jails: dict[str, str] = {}
        self.users: set[str] = {"root"}
        self.failures: dict[str, str] = {}

        if zfs:
            self.datasets["zroot/ROOT/default"] = "/"
            for dataset, mountpoint in (
                ("zroot/bsdeploy", BSDEPLOY_BASE),
                ("zroot/bsdeploy/base", BASE_DIR),
                ("zroot/bsdeploy/images", IMAGES_DIR),
                ("zroot/bsdeploy/jails", JAILS_DIR),
            ):
                self.datasets[dataset] = mountpoint
                self._mkdir(mountpoint)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail_on(self, pattern: str, stderr: str = "simulated failure") -> None:
        """Make every command containing pattern exit non-zero."""
        self.failures[pattern] = stderr

    def clear_failures(self) -> None:
        self.failures.clear()

    def ran(self, pattern: str) -> bool:
        return any(pattern in c for c in self.commands)

    def matching(self, pattern: str) -> list[str]:
        return [c for c in self.commands if pattern in c]

    def mounts_under(self, root: str) -> list[str]:
        return [t for _, t in self.mounts if t == root or t.startswith(f"{root}/")]

    def exists(self, path: str) -> bool:
        return path in self.dirs or path in self.files or path in self.links

    def add_tree(self, root: str, relative: tuple[str, ...] | list[str]) -> None:
        self._mkdir(root)
        for rel in relative:
            self._mkdir(f"{root}/{rel}")

    # ------------------------------------------------------------------
    # RemoteExecutor interface
    # ------------------------------------------------------------------

    def elevate(self, command: str) -> str:
        return f"doas {command}" if self.use_doas else command

    def run(self, command, privileged=False, timeout=None, input_text=None) -> RemoteResult:
        full = self.elevate(command) if privileged else command
        self.commands.append(full)
        self._check_failure(full)
        stdout = self._dispatch(full.removeprefix("doas "))
        return RemoteResult(host=self.host, success=True, stdout=stdout, stderr="", exit_code=0)

    def run_capture(self, command, privileged=False, timeout=None) -> str:
        return self.run(command, privileged=privileged, timeout=timeout).stdout

    def succeeds(self, command, privileged=False, timeout=None) -> bool:
        try:
            self.run(command, privileged=privileged, timeout=timeout)
        except RemoteExecError:
            return False
        return True

    def write_file(self, content, path, privileged=False, timeout=None) -> None:
        command = f"write {path}"
        self.commands.append(command)
        self._check_failure(command)
        self._mkdir(str(Path(path).parent))
        self.files[path] = content

    def sync_tree(self, local_dir, remote_dir, excludes=None, privileged=False, timeout=None):
        command = f"sync {local_dir} {remote_dir}"
        self.commands.append(command)
        self._check_failure(command)
        self.syncs.append(
            {"local_dir": local_dir, "remote_dir": remote_dir, "excludes": list(excludes or [])}
        )
        self._mkdir(remote_dir)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def _check_failure(self, command: str) -> None:
        for pattern, stderr in self.failures.items():
            if pattern in command:
                raise RemoteExecError(
                    f"Command failed on {self.host}: {command}. Error: {stderr}",
                    host=self.host,
                    command=command,
                    exit_code=1,
                    stderr=stderr,
                )

    def _fail(self, command: str, stderr: str = "") -> None:
        raise RemoteExecError(
            f"Command failed on {self.host}: {command}",
            host=self.host,
            command=command,
            exit_code=1,
            stderr=stderr,
        )

    def _mkdir(self, path: str) -> None:
        path = path.rstrip("/") or "/"
        while path not in self.dirs:
            self.dirs.add(path)
            path = str(Path(path).parent)

    def _remove(self, path: str) -> None:
        path = path.rstrip("/")
        for store in (self.dirs, self.links):
            for p in [p for p in store if p == path or p.startswith(f"{path}/")]:
                if isinstance(store, set):
                    store.discard(p)
                else:
                    del store[p]
        for p in [p for p in self.files if p == path or p.startswith(f"{path}/")]:
            del self.files[p]

    def _copy_tree(self, source: str, dest: str) -> None:
        source = source.rstrip("/")
        dest = dest.rstrip("/")
        self._mkdir(dest)
        for p in [p for p in self.dirs if p.startswith(f"{source}/")]:
            self._mkdir(dest + p[len(source) :])
        for p, content in [(p, c) for p, c in self.files.items() if p.startswith(f"{source}/")]:
            self.files[dest + p[len(source) :]] = content

    def _dataset_containing(self, path: str) -> tuple[str, str] | None:
        best = None
        for dataset, mountpoint in self.datasets.items():
            if dataset in self.unmounted:
                continue
            m = mountpoint.rstrip("/")
            if path == mountpoint or m == "" or path.startswith(f"{m}/"):
                if best is None or len(mountpoint) > len(best[1]):
                    best = (dataset, mountpoint)
        return best

    def _mount_output(self) -> str:
        lines = [
            f"{d} on {mp} (zfs, local)"
            for d, mp in sorted(self.datasets.items(), key=lambda item: item[1])
            if d not in self.unmounted
        ]
        lines.extend(f"{s} on {t} (nullfs, local)" for s, t in self.mounts)
        return "".join(f"{line}\n" for line in lines)

    @staticmethod
    def _option(args: list[str], key: str) -> str:
        """Value of a -o key=value option."""
        for arg in args:
            if arg.startswith(f"{key}="):
                return arg.split("=", 1)[1]
        raise KeyError(key)

    def _ifconfig_output(self) -> str:
        lines = ["lo1: flags=8049<UP,LOOPBACK,RUNNING,MULTICAST> metric 0 mtu 16384"]
        lines.extend(f"\tinet {ip} netmask 0xffffffff" for ip in sorted(self.aliases))
        return "\n".join(lines) + "\n"

    def _dispatch(self, command: str) -> str:  # noqa: C901
        if "tar -xf - -C " in command:
            target = command.rsplit("-C ", 1)[1].strip().strip("'")
            self.add_tree(target, BASE_TREE)
            return ""
        if "tee -a " in command:
            path = command.split("tee -a ", 1)[1].split()[0]
            line = shlex.split(command.split("|", 1)[0])[1]
            self.files[path] = self.files.get(path, "") + line + "\n"
            return ""

        args = shlex.split(command)
        if not args:
            return ""
        name = args[0]

        if name == "uname":
            return "amd64 amd64\n" if "-m" in args else f"{self.release}\n"
        if name == "test":
            flag, path = args[1], args[2]
            checks = {
                "-d": path in self.dirs,
                "-f": path in self.files,
                "-e": self.exists(path),
                "-L": path in self.links,
            }
            if not checks[flag]:
                self._fail(command)
            return ""
        if name == "mkdir":
            paths = [a for a in args[1:] if not a.startswith("-")]
            if "-p" not in args:
                if any(p in self.dirs for p in paths):
                    self._fail(command, "File exists")
            for p in paths:
                self._mkdir(p)
            return ""
        if name == "rm":
            for p in [a for a in args[1:] if not a.startswith("-")]:
                self._remove(p)
            return ""
        if name == "touch":
            self.files[args[1]] = ""
            return ""
        if name == "cat":
            if args[1] not in self.files:
                self._fail(command, "No such file or directory")
            return self.files[args[1]]
        if name == "ls":
            parent = args[1].rstrip("/")
            if parent not in self.dirs:
                self._fail(command, "No such file or directory")
            children = {p[len(parent) + 1 :] for p in self.dirs if p.startswith(f"{parent}/")}
            return "\n".join(sorted(c for c in children if "/" not in c)) + "\n"
        if name == "grep":
            needle, path = args[-2], args[-1]
            if needle not in self.files.get(path, ""):
                self._fail(command)
            return ""
        if name == "id":
            if args[1] not in self.users:
                self._fail(command, "no such user")
            return ""
        if name == "pw" and "useradd" in args:
            self.users.add(args[args.index("-n") + 1])
            return ""
        if name == "readlink":
            if args[1] not in self.links:
                self._fail(command)
            return self.links[args[1]] + "\n"
        if name == "ln":
            self.links[args[-1]] = args[-2]
            return ""
        if name == "stat":
            return "100\n"
        if name in ("rsync", "cp"):
            paths = [a for a in args[1:] if not a.startswith("-")]
            source, dest = paths[-2], paths[-1]
            if name == "cp" and not source.endswith("/"):
                dest = f"{dest.rstrip('/')}/{Path(source).name}"
            if source in self.dirs or source.rstrip("/") in self.dirs:
                self._copy_tree(source, dest)
            elif source in self.files:
                self.files[dest] = self.files[source]
            return ""
        if name == "zfs":
            return self._zfs(command, args)
        if name == "mount":
            if len(args) == 1:
                return self._mount_output()
            self.mounts.append(("devfs", args[-1]))
            return ""
        if name == "mount_nullfs":
            self.mounts.append((args[-2], args[-1]))
            return ""
        if name == "umount":
            target = args[-1]
            if any(t == target for _, t in self.mounts):
                self.mounts = [(s, t) for s, t in self.mounts if t != target]
                return ""
            datasets = [
                d for d, mp in self.datasets.items() if mp == target and d not in self.unmounted
            ]
            if not datasets:
                self._fail(command, "not a file system root directory")
            self.unmounted.update(datasets)
            return ""
        if name == "ifconfig":
            return self._ifconfig(command, args)
        if name == "jail":
            return self._jail(command, args)
        if name == "jls":
            if args[1:] == ["name"]:
                return "".join(f"{n}\n" for n in sorted(self.jails))
            jail = args[args.index("-j") + 1]
            if jail not in self.jails:
                self._fail(command, f"jls: jail \"{jail}\" not found")
            ip = self.jails[jail]
            return ("-" if ip == "inherit" else ip) + "\n"
        return ""

    def _zfs(self, command: str, args: list[str]) -> str:
        sub = args[1]
        if sub == "list":
            target = args[-1]
            if "-t" in args:
                if target not in self.snapshots:
                    self._fail(command, "dataset does not exist")
                return f"{target}\n"
            if "name,mountpoint" in args:
                found = self._dataset_containing(target) if target in self.dirs else None
                if not found:
                    self._fail(command, "not a ZFS filesystem")
                return f"{found[0]}\t{found[1]}\n"
            if target not in self.datasets:
                self._fail(command, "dataset does not exist")
            return f"{target}\n"
        if sub == "create":
            mountpoint = self._option(args, "mountpoint")
            self.datasets[args[-1]] = mountpoint
            self._mkdir(mountpoint)
            return ""
        if sub == "snapshot":
            self.snapshots.add(args[-1])
            return ""
        if sub == "clone":
            mountpoint = self._option(args, "mountpoint")
            snapshot, dataset = args[-2], args[-1]
            if snapshot not in self.snapshots:
                self._fail(command, "dataset does not exist")
            origin = self.datasets[snapshot.split("@")[0]]
            self.datasets[dataset] = mountpoint
            self._copy_tree(origin, mountpoint)
            return ""
        if sub == "destroy":
            dataset = args[-1]
            for d in [d for d in self.datasets if d == dataset or d.startswith(f"{dataset}/")]:
                del self.datasets[d]
                self.unmounted.discard(d)
            self.snapshots = {
                s for s in self.snapshots if not s.startswith((f"{dataset}@", f"{dataset}/"))
            }
            return ""
        return ""

    def _ifconfig(self, command: str, args: list[str]) -> str:
        if len(args) == 2:
            if not self.interface:
                self._fail(command, "interface lo1 does not exist")
            return self._ifconfig_output()
        if args[2] == "create":
            self.interface = True
            return ""
        address = args[3].split("/")[0]
        if args[-1] == "alias":
            self.aliases.add(address)
        elif args[-1] == "-alias":
            if address not in self.aliases:
                self._fail(command, "Can't assign requested address")
            self.aliases.discard(address)
        return ""

    def _jail(self, command: str, args: list[str]) -> str:
        if args[1] == "-c":
            params = dict(a.split("=", 1) for a in args[2:] if "=" in a)
            name = params["name"]
            if name in self.jails:
                self._fail(command, "jail already exists")
            self.jails[name] = params.get("ip4.addr") or "inherit"
            return ""
        if args[1] == "-r":
            name = args[2]
            if name not in self.jails:
                self._fail(command, f"jail \"{name}\" not found")
            del self.jails[name]
        return ""


__all__ = ["BASE_TREE", "FakeHost"]
