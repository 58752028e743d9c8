"""warden - sandboxed plugin runtime.

warden runs untrusted plugin code in isolated worker processes and mediates
every side effect through a declarative permission model.

Key modules:

- :mod:`warden.plugins` - Registry, sandboxes, permissions, storage quotas, audit trail
- :mod:`warden.config` - YAML configuration (pydantic models)
- :mod:`warden.cli` - ``warden`` command line
"""

__version__ = "0.1.0"
