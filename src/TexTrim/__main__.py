"""Entrypoint for `python -m TexTrim`."""
import sys
import logging

logger = logging.getLogger("texture_optimizer")


def _run_cli():
    from .cli import main as cli_main
    logger.debug("Dispatching to CLI entrypoint.")
    return cli_main()


if __name__ == "__main__":
    sys.exit(_run_cli())
