from .web_calculator_app import main

main()
