import sys

from doughbot.cli import main

sys.exit(main())
