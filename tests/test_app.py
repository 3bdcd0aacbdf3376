from datetime import timedelta

from docbroker.app import build_services
from docbroker.datastore.couchdb import CouchDBClient
from docbroker.deployments.notifications import LogNotificationSink, WebhookNotificationSink
from docbroker.deployments.provisioning import DigitalOceanAgentsClient
from docbroker.settings import Settings


def test_settings_defaults():
    settings = Settings.model_validate({})
    assert settings.rate_limit_max_requests == 100
    assert settings.breaker_failure_threshold == 5
    assert settings.breaker_recovery_seconds == 30
    assert settings.save_max_attempts == 3
    assert settings.deployment_max_retries == 60
    assert settings.provisioning_timeout == 15
    assert settings.notification_webhook_url is None


def test_settings_read_environment_names():
    settings = Settings.model_validate(
        {"COUCHDB_URL": "https://acct.cloudant.com", "RATE_LIMIT_MAX_REQUESTS": "10"}
    )
    assert settings.couchdb_url == "https://acct.cloudant.com"
    assert settings.rate_limit_max_requests == 10


async def test_build_services_from_settings():
    settings = Settings.model_validate(
        {"DEPLOYMENT_POLL_INTERVAL": "2", "BREAKER_FAILURE_THRESHOLD": "7"}
    )
    services = build_services(settings)

    assert isinstance(services.store, CouchDBClient)
    assert isinstance(services.provisioning, DigitalOceanAgentsClient)
    assert isinstance(services.notifier, LogNotificationSink)
    assert services.reconciler.interval == timedelta(seconds=2)
    assert services.facade.circuit_breaker.config.failure_threshold == 7
    await services.shutdown()


async def test_webhook_sink_selected_when_configured():
    settings = Settings.model_validate({"NOTIFICATION_WEBHOOK_URL": "http://hooks.test"})
    services = build_services(settings)
    assert isinstance(services.notifier, WebhookNotificationSink)
    await services.shutdown()


async def test_start_without_connection_check(services):
    assert await services.start() is True
