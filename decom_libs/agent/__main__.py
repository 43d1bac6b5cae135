"""Allows running the agent with `python3 -m decom_libs.agent`."""
import sys

from decom_libs.agent.cli import main

sys.exit(main())
