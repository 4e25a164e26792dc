from soqtt.main import main

main()
