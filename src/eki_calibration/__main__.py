from eki_calibration.cli import main

main()
