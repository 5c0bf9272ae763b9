import sys

from logtally.cli import main

sys.exit(main())
