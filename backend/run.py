from playbymail import create_app, socketio
from playbymail.services.games.scheduler import schedule_turn_checks
from playbymail.services.games.workers import start_job_workers

app = create_app()
schedule_turn_checks(app)
start_job_workers(app)

if __name__ == '__main__':
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
