"""Allow ``python -m uefi_netboot``."""

import sys

from uefi_netboot import cli

if __name__ == "__main__":
    sys.exit(cli.main())
