"""smart-exec 入口点。

支持: python -m smart_exec
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
