"""Shared helpers for CLI commands."""

import logging

import structlog
import typer

from toolrelay.application.factory import AgentFactory


def configure_logging(debug: bool) -> None:
    """Route structlog output through a level filter chosen by ``--debug``."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


def factory_from_context(ctx: typer.Context) -> tuple[AgentFactory, str]:
    """Build the factory from global options and return it with the profile name."""
    opts = ctx.obj or {}
    configure_logging(opts.get("debug", False))
    return AgentFactory(config_dir=opts.get("config_dir", "configs")), opts.get("profile", "dev")
