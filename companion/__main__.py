import sys

from companion.main import main

sys.exit(main())
