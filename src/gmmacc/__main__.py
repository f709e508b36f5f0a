import sys

from gmmacc.cli import main

sys.exit(main())
