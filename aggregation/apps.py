from django.apps import AppConfig


class AggregationConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'aggregation'
    verbose_name = 'Aggregation & Amendments'

    def ready(self):
        # Wire report edits to the staleness tracker
        from aggregation import receivers  # noqa: F401
