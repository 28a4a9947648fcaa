import sys

from storycards.cli import main

sys.exit(main())
