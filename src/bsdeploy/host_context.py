"""Per-host component wiring.

Every command works on one host at a time through a single executor; the
components below share it.
"""

from collections.abc import Callable
from dataclasses import dataclass

from bsdeploy.base_system import BaseSystemProvisioner
from bsdeploy.boot import BootPersistence
from bsdeploy.image import ImageBuilder
from bsdeploy.jail import JailManager
from bsdeploy.network import AddressAllocator
from bsdeploy.proxy import ProxyManager
from bsdeploy.remote_exec import RemoteExecutor
from bsdeploy.storage import Storage


@dataclass
class HostContext:
    executor: RemoteExecutor
    storage: Storage
    bases: BaseSystemProvisioner
    images: ImageBuilder
    allocator: AddressAllocator
    jails: JailManager
    proxy: ProxyManager
    boot: BootPersistence

    @property
    def host(self) -> str:
        return self.executor.host

    @classmethod
    def create(
        cls,
        executor: RemoteExecutor,
        service: str,
        progress_callback: Callable[[str], None] | None = None,
    ) -> "HostContext":
        storage = Storage(executor)
        allocator = AddressAllocator(executor)
        return cls(
            executor=executor,
            storage=storage,
            bases=BaseSystemProvisioner(executor, storage, progress_callback),
            images=ImageBuilder(executor, storage, progress_callback),
            allocator=allocator,
            jails=JailManager(executor, storage, allocator, progress_callback),
            proxy=ProxyManager(executor, service),
            boot=BootPersistence(executor),
        )


__all__ = ["HostContext"]
