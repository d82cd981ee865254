from ig_trading_api import (
    IGClient,
    ShutdownSignal,
    SignalListener,
    Subscription,
    SubscriptionListener,
)
from rich.console import Console
from rich.text import Text
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)

FIELDS = [
    "BID", "OFFER", "HIGH", "LOW", "MID_OPEN", "CHANGE", "CHANGE_PCT",
    "MARKET_DELAY", "MARKET_STATE", "UPDATE_TIME",
]

console = Console()


class PriceListener(SubscriptionListener):
    """Prints every update, changed fields highlighted."""

    def onItemUpdate(self, update):
        changed = update.getChangedFields()
        line = Text(f"{update.getItemName()}, ")
        for field in FIELDS:
            value = update.getValue(field) or "N/A"
            style = "yellow" if field in changed else None
            line.append(f"{field}: ")
            line.append(value, style=style)
            line.append(", ")
        console.print(line)


if __name__ == "__main__":
    # Reads config.yaml (IG section) and IG_* environment variables.
    client = IGClient()

    subscription = Subscription(
        "MERGE",
        [
            "MARKET:IX.D.DAX.IFMM.IP",      # DAX40 Cash 1€
            "MARKET:CS.D.BITCOIN.CFD.IP",   # Bitcoin
        ],
        FIELDS,
    )
    subscription.setRequestedSnapshot("yes")
    subscription.addListener(PriceListener())

    shutdown = ShutdownSignal()
    with SignalListener(shutdown):
        outcome = client.streaming([subscription], shutdown=shutdown).run()

    console.print(f"Stream finished: {outcome.value}")
