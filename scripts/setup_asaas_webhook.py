"""Register (or inspect) the Asaas webhook that points at this deployment.

The registration carries `ASAAS__WEBHOOK_SECRET` as its auth token, which is
what `/webhooks/asaas` verifies on every delivery.
"""

import argparse

from paysettle.common.config import settings
from paysettle.common.exceptions import PaymentException
from paysettle.common.logging import configure_logging
from paysettle.gateways.asaas.services import ALL_RECOMMENDED_EVENTS
from paysettle.gateways.contracts import WebhookService
from paysettle.gateways.registry import build_registry


def app_webhook_url(app_url: str) -> str:
    return f"{app_url.rstrip('/')}/webhooks/asaas"


def list_webhooks(service: WebhookService) -> int:
    hooks = service.list_webhooks()
    if not hooks:
        print("No webhooks configured.")
        return 0
    for hook in hooks:
        state = "enabled" if hook.enabled else "disabled"
        print(f"{hook.id:<24} {state:<9} events={len(hook.events):<3} {hook.name or '-':<16} {hook.url}")
    return 0


def delete_webhook(service: WebhookService, webhook_id: str) -> int:
    if service.delete(webhook_id):
        print(f"Deleted webhook {webhook_id}")
        return 0
    print(f"Asaas refused to delete webhook {webhook_id}")
    return 1


def setup_webhook(service: WebhookService, url: str, auth_token: str | None) -> int:
    """Create or update the registration for `url` with every recommended event."""

    if not auth_token:
        print("ASAAS__WEBHOOK_SECRET is not set: the webhook will be registered without an auth token.")
    hook = service.create_or_update(url, ALL_RECOMMENDED_EVENTS, auth_token=auth_token)
    print(f"id={hook.id}")
    print(f"url={hook.url}")
    print(f"enabled={hook.enabled}")
    print(f"events={len(hook.events)}")
    print(f"auth_token={'yes' if hook.has_auth_token else 'no'}")
    return 0


def main() -> None:
    """Parse CLI args and run one webhook management action."""

    parser = argparse.ArgumentParser(description="Set up or manage the Asaas webhook for this deployment.")
    parser.add_argument("--url", default=None, help="Webhook URL (defaults to APP_URL/webhooks/asaas)")
    parser.add_argument("--list", action="store_true", help="List configured webhooks")
    parser.add_argument("--delete", default=None, metavar="WEBHOOK_ID", help="Delete a webhook by id")
    parser.add_argument("--remove-backoff", default=None, metavar="WEBHOOK_ID", help="Clear a delivery penalty")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    args = parser.parse_args()

    configure_logging(settings.log_level)
    registry = build_registry(settings)
    service = registry.driver("asaas").webhooks()
    try:
        if args.list:
            code = list_webhooks(service)
        elif args.delete:
            code = delete_webhook(service, args.delete)
        elif args.remove_backoff:
            code = 0 if service.remove_backoff(args.remove_backoff) else 1
            print("Backoff removed" if code == 0 else "Asaas refused to remove the backoff")
        else:
            url = args.url or app_webhook_url(settings.app_url)
            print(f"URL: {url}")
            print(f"Events: {len(ALL_RECOMMENDED_EVENTS)}")
            if not args.yes and input("Create or update this webhook? [Y/n] ").strip().lower() not in ("", "y", "yes"):
                print("Cancelled.")
                return
            code = setup_webhook(service, url, settings.asaas.webhook_secret)
    except PaymentException as exc:
        raise SystemExit(f"Asaas webhook operation failed: {exc}") from exc
    finally:
        registry.forget_resolved_instances()
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
