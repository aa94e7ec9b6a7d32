import sys

from assetgate.cli import main

sys.exit(main())
