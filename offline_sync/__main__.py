from offline_sync.entrypoints.cli import main

raise SystemExit(main())
