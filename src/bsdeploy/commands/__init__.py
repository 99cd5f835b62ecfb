"""Commands for bsdeploy CLI."""

from bsdeploy.commands.deploy import register_deploy_command
from bsdeploy.commands.destroy import register_destroy_command
from bsdeploy.commands.init import register_init_command
from bsdeploy.commands.provision import register_setup_command
from bsdeploy.commands.status import register_status_command
from bsdeploy.commands.unlock import register_unlock_command

__all__ = [
    "register_deploy_command",
    "register_destroy_command",
    "register_init_command",
    "register_setup_command",
    "register_status_command",
    "register_unlock_command",
]
