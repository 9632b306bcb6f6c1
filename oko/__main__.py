from oko.cli import app

app()
