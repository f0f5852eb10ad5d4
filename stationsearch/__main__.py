import sys

from stationsearch.cli import main

sys.exit(main())
