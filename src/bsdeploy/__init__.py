"""bsdeploy - FreeBSD jail deployment CLI

Philosophy:
- Remote state is the source of truth (no local database)
- Brick architecture (self-contained modules)
- Every cache entry is either complete or absent
- Fail fast, roll back the jail you just created

bsdeploy turns a declarative service description into a running,
network-isolated, reverse-proxied FreeBSD jail on one or more hosts
reached over SSH, keeping a few previous generations for rollback.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
