import asyncio

import click

from codemend.app import Services
from ..formatter import console, format_json, format_table


async def build_report(services: Services, method, domain):
    await services.start()
    try:
        return await services.calibrator.get_calibration_report(method=method, domain=domain)
    finally:
        await services.close()


@click.command("calibration-report")
@click.option("--method", help="Only outcomes produced by this fix method.")
@click.option("--domain", help="Only outcomes for this domain (file extension).")
@click.option("--format", "-f", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def calibration_report(ctx, method, domain, output_format):
    """
    Show how well predicted fix confidence matches observed outcomes.
    """
    cli = ctx.obj
    report = asyncio.run(build_report(Services.build(cli.settings), method, domain))
    cli.audit("calibration-report", method=method, domain=domain)

    if output_format == "json":
        click.echo(format_json(report.model_dump(mode="json")))
        return

    rows = [
        ["samples", report.sample_count],
        ["mean predicted", f"{report.mean_predicted:.3f}"],
        ["mean actual", f"{report.mean_actual:.3f}"],
        ["calibration error", f"{report.calibration_error:.3f}"],
        ["mean absolute error", f"{report.mean_absolute_error:.3f}"],
        ["expected calibration error", f"{report.expected_calibration_error:.3f}"],
        ["bias", f"{report.bias:+.3f}"],
        ["reliability", report.reliability],
    ]
    console.print(format_table(rows, ["Metric", "Value"], title="Confidence calibration"))
    for line in report.recommendations:
        console.print(f"- {line}")
