import sys

from masksearch.cli import main

sys.exit(main())
