"""Main entry point for the docrecon CLI."""

from docrecon.cli import main

if __name__ == "__main__":
    main()
