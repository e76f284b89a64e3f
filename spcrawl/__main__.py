from .commands.crawl import main

raise SystemExit(main())
