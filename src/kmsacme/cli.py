"""kmsacme command line argument & config processing."""
import argparse
import copy
import os
from typing import List
from typing import Mapping
from typing import Optional

import configargparse

from kmsacme import configuration
from kmsacme import constants

VERBS = ("issue", "renew", "serve")

SHORT_USAGE = """
  kmsacme [OPTIONS] issue DOMAIN --csr CSR --out CERT
  kmsacme [OPTIONS] renew CERT [CERT ...]
  kmsacme [OPTIONS] serve --challenge-dir DIR [--http-01-port PORT]

Every option can also be set in a config file (-c) or through an
environment variable named after it, e.g. KMSACME_KEY_ID for --key-id.
"""


def flag_default(name):
    """Default value for CLI flag."""
    return copy.deepcopy(constants.CLI_DEFAULTS[name])


def _paths_parser(parser: configargparse.ArgParser) -> None:
    parser.add_argument(
        "--challenge-dir", dest="challenge_dir", default=flag_default("challenge_dir"),
        help="Directory the http-01 validations are written to, typically the "
             ".well-known/acme-challenge directory of a running web server. "
             "Without it validations are kept in memory and served on "
             "--http-01-port for the duration of the run.")
    parser.add_argument(
        "--logs-dir", dest="logs_dir", default=flag_default("logs_dir"),
        help="Logs directory. A rotating debug log is written there.")
    parser.add_argument(
        "--max-log-backups", type=int, default=flag_default("max_log_backups"),
        help=argparse.SUPPRESS)


def _kms_parser(parser: configargparse.ArgParser) -> None:
    parser.add_argument(
        "--kms", choices=constants.KMS_TYPES, default=flag_default("kms"),
        help="Key management service holding the account key.")
    parser.add_argument(
        "--key-id", dest="key_id", default=flag_default("key_id"),
        help="Name of the account key in the KMS.")
    parser.add_argument(
        "--account-key", dest="account_key", default=flag_default("account_key"),
        help="PEM encoded RSA account key (--kms local).")
    parser.add_argument(
        "--vault-url", dest="vault_url", default=flag_default("vault_url"),
        help="Key Vault URL, e.g. https://myvault.vault.azure.net (--kms keyvault). "
             "Credentials are picked up by azure-identity's DefaultAzureCredential.")


def _verb_parser(parser: configargparse.ArgParser) -> None:
    parser.add_argument(
        "--csr", dest="csr", default=None,
        help="issue: CSR for DOMAIN, PEM or DER.")
    parser.add_argument(
        "--out", dest="out", default=None,
        help="issue: Where to write the certificate chain.")
    parser.add_argument(
        "--renew-before-days", dest="renew_before_days", type=int,
        default=flag_default("renew_before_days"),
        help="renew: Renew certificates expiring within this many days.")
    parser.add_argument(
        "--force-renewal", dest="force_renewal", action="store_true",
        default=flag_default("force_renewal"),
        help="renew: Renew every certificate, due or not.")
    parser.add_argument(
        "--http-01-address", dest="http01_address",
        default=flag_default("http01_address"),
        help="Address the http-01 responder listens on (serve, or issue and "
             "renew without --challenge-dir).")
    parser.add_argument(
        "--http-01-port", dest="http01_port", type=int,
        default=flag_default("http01_port"),
        help="Port the http-01 responder listens on. (default: %(default)s)")


def build_parser() -> configargparse.ArgParser:
    """Create the argument parser for all verbs."""
    parser = configargparse.ArgParser(
        prog="kmsacme",
        usage=SHORT_USAGE,
        default_config_files=flag_default("config_files"),
        auto_env_var_prefix=constants.ENV_VAR_PREFIX,
        args_for_setting_config_path=["-c", "--config"],
        config_arg_help_message="path to config file (default: {0})".format(
            " and ".join(flag_default("config_files"))),
    )
    parser.add_argument("verb", choices=VERBS, help="What to do.")
    parser.add_argument(
        "targets", nargs="*", metavar="TARGET",
        help="issue: the domain. renew: certificate files, each NAME.pem "
             "with its CSR next to it in NAME.csr.")
    parser.add_argument(
        "--server", default=flag_default("server"),
        help="ACME Directory Resource URI. (default: %(default)s)")
    parser.add_argument(
        "-m", "--email", dest="email", default=flag_default("email"),
        help="Email address for important account notifications.")
    parser.add_argument(
        "--poll-timeout", dest="poll_timeout", type=int,
        default=flag_default("poll_timeout"),
        help="Seconds to wait for the CA to validate and issue. (default: %(default)s)")
    parser.add_argument(
        "--network-timeout", dest="network_timeout", type=int,
        default=flag_default("network_timeout"),
        help="Timeout of each HTTP request in seconds. (default: %(default)s)")
    parser.add_argument(
        "--user-agent", dest="user_agent", default=flag_default("user_agent"),
        help="User-Agent header sent to the CA.")
    parser.add_argument(
        "--no-verify-ssl", action="store_true", default=flag_default("no_verify_ssl"),
        help="Disable verification of the ACME server's certificate.")
    parser.add_argument(
        "-v", "--verbose", dest="verbose_count", action="count",
        default=flag_default("verbose_count"), help="This flag can be used "
        "multiple times to incrementally increase the verbosity of output, "
        "e.g. -vv.")
    parser.add_argument(
        "-q", "--quiet", dest="quiet", action="store_true",
        default=flag_default("quiet"),
        help="Silence all output except errors.")
    _kms_parser(parser)
    _paths_parser(parser)
    _verb_parser(parser)
    return parser


def prepare_and_parse_args(args: List[str],
                           env_vars: Optional[Mapping[str, str]] = None
                           ) -> configuration.NamespaceConfig:
    """Returns parsed command line arguments.

    :param list args: command line arguments with the program name removed
    :param dict env_vars: environment, `os.environ` by default

    :returns: parsed command line arguments
    :rtype: configuration.NamespaceConfig

    """
    parser = build_parser()
    namespace = parser.parse_args(
        args, env_vars=os.environ if env_vars is None else env_vars)
    return configuration.NamespaceConfig(namespace)
