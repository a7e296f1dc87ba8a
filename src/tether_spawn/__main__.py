"""tether-spawn 入口点。

支持: python -m tether_spawn
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
