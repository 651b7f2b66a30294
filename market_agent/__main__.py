from market_agent.main import main

raise SystemExit(main())
