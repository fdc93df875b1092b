"""Allow running the hub as a module: python -m toolhub."""

from toolhub.runner import main

if __name__ == "__main__":
    main()
