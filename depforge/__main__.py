from depforge.cli import main

raise SystemExit(main())
