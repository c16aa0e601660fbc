import click
import uvicorn

from codemend.app import Services
from codemend.web.server import create_app


@click.command()
@click.option("--host", help="Bind address (defaults to web.host).")
@click.option("--port", type=int, help="Port (defaults to web.port).")
@click.pass_context
def serve(ctx, host, port):
    """
    Run the HTTP API.
    """
    cli = ctx.obj
    web = cli.settings.web
    host = host or web.host
    port = port or web.port
    app = create_app(Services.build(cli.settings))

    cli.audit("serve", host=host, port=port)
    click.echo(f"Starting codemend API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)
