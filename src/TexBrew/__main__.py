"""Entrypoint for `python -m TexBrew`.

Usage:
  - Single texture: `python -m TexBrew -i brick_gloss.png -o out/`
  - Directory:      `python -m TexBrew -i ./textures -o ./ktx2`
"""
import logging

logger = logging.getLogger("texture_conversion")


def _run_cli():
    from .cli import main as cli_main
    logger.debug("Dispatching to CLI entrypoint.")
    cli_main()


if __name__ == "__main__":
    _run_cli()
