from orderbook_collector.runner import cli

cli()
