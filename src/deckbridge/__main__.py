import sys

from deckbridge.cli import main

sys.exit(main())
