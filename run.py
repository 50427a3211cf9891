#!/usr/bin/env python3
"""CLI entry point for localproxy.

Runs the same command line as the installed ``localproxy`` script, for use
straight from a checkout:

    python run.py start --from localhost:5173 --to myapp.test --https
"""

from localproxy.main import main

if __name__ == "__main__":
    main()
