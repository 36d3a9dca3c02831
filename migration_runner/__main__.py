import sys

from migration_runner.orchestrator import main

sys.exit(main())
