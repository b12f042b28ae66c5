"""SQLite persistence layer.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

Submodules:
  schema            - DDL and column migrations
  connection        - connection lifecycle, write utilities
  instances         - one row per user slot
  deployment_logs   - append-only lifecycle audit log
  configurations    - stored desired configuration, channels, compiled blob
  links             - agent-to-agent delegation links
"""

from clawfleet.state.configurations import (
    delete_channel,
    get_full_config,
    get_gateway_token,
    list_channels,
    load_configuration,
    save_configuration,
    set_full_config,
    update_configuration,
    upsert_channel,
)
from clawfleet.state.connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from clawfleet.state.deployment_logs import get_deployment_logs, log_deployment
from clawfleet.state.instances import (
    create_instance,
    delete_instance,
    get_instance,
    get_instance_for_user,
    list_instances,
    set_instance_status,
    update_instance,
)
from clawfleet.state.links import add_agent_link, list_delegation_targets, remove_agent_link

__all__ = [
    "_get_db",
    "_init_test_database",
    "add_agent_link",
    "atomic_write",
    "close_database",
    "create_instance",
    "delete_channel",
    "delete_instance",
    "get_deployment_logs",
    "get_full_config",
    "get_gateway_token",
    "get_instance",
    "get_instance_for_user",
    "init_database",
    "list_channels",
    "list_delegation_targets",
    "list_instances",
    "load_configuration",
    "log_deployment",
    "remove_agent_link",
    "save_configuration",
    "set_full_config",
    "set_instance_status",
    "update_configuration",
    "update_instance",
    "upsert_channel",
]
