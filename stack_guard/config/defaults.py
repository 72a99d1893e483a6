"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Sensible defaults for stack-guard when no config file is provided.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG", "DEFAULT_CONFIG_NAME"]

DEFAULT_CONFIG_NAME = "stack-guard.yaml"

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "project": {
        "base_dir": ".",
        "compose_file": "static/docker-compose.yml",
        "env_file": ".env",
        "project_name": None,
        "state_dir": ".stack-guard",
    },
    "services": {
        "names": ["database", "backend", "frontend", "engine", "nginx"],
        "version_tag_template": "STACK_{SERVICE}_TAG",
    },
    "snapshot": {
        "dir": None,
        "retention": 5,
        "protected_paths": [".env", "static", "ssl", "VERSION"],
        "include_system_info": True,
    },
    "backup": {
        "dir": "backups",
        "retention": 10,
        "config_paths": [".env", "static", "VERSION", "ssl/.ssl_info"],
        "ssl_paths": ["ssl"],
        "data_paths": ["data"],
        "history_log": "backup_history.log",
        "pre_update_backup": True,
        "volumes": True,
        "database_service": "database",
        "database_user_var": "POSTGRES_USER",
        "database_name_var": "POSTGRES_DB",
    },
    "timeouts": {
        "start": 60.0,
        "stop": 30.0,
        "update": 120.0,
        "lock": 3600.0,
        "command": None,
    },
    "health": {
        "interval": 5.0,
    },
    "recovery": {
        "reports_dir": None,
        "emergency_backup": True,
    },
    "observability": {
        "exporters": ["jsonl"],
        "audit_file": None,
        "audit_log_max_entries": 10000,
    },
}
