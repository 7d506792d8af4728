from chainplay import create_app, socketio
from chainplay.services.games.expirations import start_background_services

app = create_app()

if __name__ == '__main__':
    # Expiration workers and the fallback sweep run beside the websocket server
    start_background_services(app)
    socketio.run(app, debug=True, use_reloader=False)
