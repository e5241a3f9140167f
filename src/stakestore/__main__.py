import sys

from stakestore.cli import main

sys.exit(main())
