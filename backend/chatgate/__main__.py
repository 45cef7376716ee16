from chatgate.cli import app

app(prog_name="chatgate")
