"""FastAPI dependencies shared by the routers."""

import os
from functools import lru_cache

from toolrelay.application.executor import AgentExecutor
from toolrelay.application.factory import AgentFactory


@lru_cache(maxsize=1)
def get_executor() -> AgentExecutor:
    """
    Process-wide executor for the profile named by ``TOOLRELAY_PROFILE``.

    Built lazily on first request so importing the app needs no configuration.
    Profiles are read from ``TOOLRELAY_CONFIG_DIR`` (default ``configs``).
    """
    factory = AgentFactory(config_dir=os.getenv("TOOLRELAY_CONFIG_DIR", "configs"))
    return factory.create_executor(os.getenv("TOOLRELAY_PROFILE", "dev"))
