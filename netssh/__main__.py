import sys

from netssh.cli import main

sys.exit(main())
