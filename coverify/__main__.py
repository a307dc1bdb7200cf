"""
Run the coverify command line with ``python -m coverify``.

License: AGPL-3.0
"""

import sys

from .cli import main

sys.exit(main())
