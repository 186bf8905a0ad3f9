import sys

from servetest.cli import main

sys.exit(main())
