from pibot.cli import cli

cli()
