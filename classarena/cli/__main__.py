import sys

from classarena.cli import main

sys.exit(main())
