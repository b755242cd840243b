from qemu_runner import cli

raise SystemExit(cli.main())
