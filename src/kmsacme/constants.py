"""kmsacme constants."""
import logging
import os
from typing import Any
from typing import Dict

LE_PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
"""Let's Encrypt production directory."""

LE_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
"""Let's Encrypt staging directory."""

ENV_VAR_PREFIX = "KMSACME_"
"""Prefix of environment variables that set command line options."""

CLI_DEFAULTS: Dict[str, Any] = dict(  # noqa
    config_files=[
        os.path.join(os.environ.get("XDG_CONFIG_HOME", "~/.config"),
                     "kmsacme", "cli.ini"),
    ],

    # Main parser
    verbose_count=0,
    quiet=False,
    server=LE_STAGING_DIRECTORY,
    email=None,
    key_id=None,
    kms="local",
    account_key=None,
    vault_url=None,
    challenge_dir=None,
    poll_timeout=90,
    network_timeout=45,
    user_agent="kmsacme",
    no_verify_ssl=False,
    logs_dir=None,
    max_log_backups=10,

    # Verb options
    renew_before_days=30,
    force_renewal=False,
    http01_address="",
    http01_port=80,
)
"""Defaults for CLI flags and `.NamespaceConfig` attributes."""

KMS_TYPES = ("local", "keyvault")
"""Supported ``--kms`` values."""

QUIET_LOGGING_LEVEL = logging.ERROR
"""Logging level to use in quiet mode."""

DEFAULT_LOGGING_LEVEL = logging.WARNING
"""Default logging level to use when not in quiet mode."""

LOG_FILE = "kmsacme.log"
"""Basename of the rotating log file in ``--logs-dir``."""

CERT_SUFFIX = ".pem"
"""Suffix of certificate files handled by ``renew``."""

CSR_SUFFIX = ".csr"
"""Suffix of the CSR file kept next to each certificate."""
