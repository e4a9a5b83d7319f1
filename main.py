"""
Main entry point for the ytdlp-wrapper application when run from source.
"""

from ytdlp_wrapper.cli import main

if __name__ == "__main__":
    main()
