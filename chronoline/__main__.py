from chronoline.cli import app

app()
