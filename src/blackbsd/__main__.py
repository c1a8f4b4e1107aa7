from blackbsd.cli.main import app

app(prog_name="blackbsd")
