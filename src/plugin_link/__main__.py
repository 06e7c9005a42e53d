"""Run plugin-link as a module: `python -m plugin_link --port=... --uid=... --dir=...`."""

from .cli import main

if __name__ == "__main__":
    main()
