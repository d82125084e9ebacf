"""
URL configuration for aggregation app
"""
from django.urls import path
from aggregation.views import aggregation_views

app_name = 'aggregation'

urlpatterns = [
    # Summary and drill-down
    path('api/aggregates/', aggregation_views.list_aggregated_values, name='list_aggregates'),
    path('api/aggregates/compute/', aggregation_views.compute_aggregate, name='compute_aggregate'),
    path('api/aggregates/<int:aggregate_id>/', aggregation_views.aggregated_value_detail, name='aggregate_detail'),
    path('api/aggregates/<int:aggregate_id>/display/', aggregation_views.display_value, name='display_value'),
    path('api/aggregates/<int:aggregate_id>/recompute/', aggregation_views.mark_for_recompute, name='mark_for_recompute'),

    # Amendment workflow
    path('api/aggregates/<int:aggregate_id>/amendments/', aggregation_views.create_amendment, name='create_amendment'),
    path('api/amendments/<int:amendment_id>/approve/', aggregation_views.approve_amendment, name='approve_amendment'),
    path('api/amendments/<int:amendment_id>/reject/', aggregation_views.reject_amendment, name='reject_amendment'),
]
