from octoprint_exporter.main import main

main()
