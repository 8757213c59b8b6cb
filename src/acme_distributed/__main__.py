import sys

from acme_distributed.cli import main

sys.exit(main())
