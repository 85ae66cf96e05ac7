import sys

from goat_teardown.cli import main

sys.exit(main())
