# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Usage:
#   forge-loop                      interactive session in the current directory
#   forge-loop "fix the failing test"   one turn, then exit
#
# Configuration comes from the environment and .env files; see config.py.

import sys

from forge_loop import display
from forge_loop.config import Settings, configure_logging
from forge_loop.errors import ConfigurationError
from forge_loop.harness import Orchestrator
from forge_loop.llm import OpenRouterModel


def main() -> None:
    try:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        if not settings.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not set.", key="OPENROUTER_API_KEY")
    except ConfigurationError as exc:
        display.error(exc.display_message())
        raise SystemExit(2) from exc

    model = OpenRouterModel(settings.model, api_key=settings.api_key, base_url=settings.base_url)
    orchestrator = Orchestrator(model, settings)

    prompt = " ".join(sys.argv[1:]).strip()
    if prompt:
        orchestrator.run_turn(prompt)
    else:
        orchestrator.chat()


if __name__ == "__main__":
    main()
