"""
Entry point for running DeviceHub as a module.

This allows running the package with: python -m devicehub
"""

from .cli import main

if __name__ == '__main__':
    main()
