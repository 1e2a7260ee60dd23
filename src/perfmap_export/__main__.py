from perfmap_export.cli import main

main()
