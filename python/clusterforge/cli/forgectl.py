"""
clusterforge/cli/forgectl.py

Subcommand dispatcher: `forgectl <subcommand> [args...]` runs
`python -m clusterforge.cli.<subcommand> [args...]`.
"""

import subprocess
import sys

SUBCOMMANDS = ("bootstrap", "teardown")


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in SUBCOMMANDS:
        print(f"Usage: forgectl {{{'|'.join(SUBCOMMANDS)}}} [args...]")
        sys.exit(1)

    subcommand = sys.argv[1]
    subcommand_args = sys.argv[2:]

    cmd = [sys.executable, "-m", f"clusterforge.cli.{subcommand}"] + subcommand_args
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
