import sys

from edge_router.main import main

sys.exit(main())
