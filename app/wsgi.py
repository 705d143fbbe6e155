from app.reservehub import create_app

app = create_app()
