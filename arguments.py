import argparse
import logging
import os
import argcomplete
import lcrConfig
from logger import logger

SETUP = "setup"
TEARDOWN = "teardown"
CREATE_PULL_SECRET = "create-image-pull-secret"
LIST_PULL_SECRETS = "list-image-pull-secrets"
SERVE = "serve"


def yaml_completer(prefix: str, parsed_args: str, **kwargs: str) -> list[str]:
    return [f for f in os.listdir('.') if (f.endswith(('.yaml', '.yml')) and f.startswith(prefix))]


def json_completer(prefix: str, parsed_args: str, **kwargs: str) -> list[str]:
    return [f for f in os.listdir('.') if (f.endswith('.json') and f.startswith(prefix))]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Ephemeral TLS container registry for kind test clusters')
    parser.add_argument('-v', '--verbosity', choices=['debug', 'info', 'warning', 'error', 'critical'], default=None, help='Set the logging level (default: $LCR_LOG_LEVEL or info)')
    parser.add_argument('-c', '--config', dest='config', default=None, type=str, help=f'Yaml file holding the {lcrConfig.CONFIG_SECTION} section (default: $TESTENV_LCR_CONFIG or {lcrConfig.DEFAULT_CONFIG_PATH})').completer = yaml_completer  # type: ignore

    subparsers = parser.add_subparsers(title='subcommands', dest='subcommand', required=True)

    descriptions = {
        SETUP: 'Provision the registry; reads a create input, prints the artifact',
        TEARDOWN: 'Tear the registry down; reads a delete input',
        CREATE_PULL_SECRET: 'Create an image pull secret for a provisioned registry',
        LIST_PULL_SECRETS: 'List the image pull secrets managed by this tool',
    }
    for name, help_text in descriptions.items():
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('-i', '--input', dest='input', default='-', type=str, help='JSON input file, "-" for stdin (default)').completer = json_completer  # type: ignore

    subparsers.add_parser(SERVE, help='Answer JSON requests, one per line on stdin, keeping tunnels alive between calls')

    argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)

    if args.verbosity is not None:
        logger.set_level(getattr(logging, args.verbosity.upper()))
    if args.config is not None:
        os.environ["TESTENV_LCR_CONFIG"] = args.config
    return args
