from cisetup.main import main

main()
