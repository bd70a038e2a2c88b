# run_server.py
from certsign.main import main

if __name__ == "__main__":
    # Listens on settings.PORT (8003 by default) behind the TLS terminator
    main()
