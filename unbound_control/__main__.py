import sys

from unbound_control.cli import main

sys.exit(main())
