"""
Aggregation API views: summary, drill-down, recompute and amendment workflow
"""
from django.contrib.auth.models import User
from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework import status

from aggregation import services
from aggregation.amendments import AmendmentResolver
from aggregation.exceptions import ConcurrencyConflict, ConfigurationError
from aggregation.models import AggregatedValue, ManagerAmendment, Report
from aggregation.staleness import StalenessTracker


def get_or_create_system_user():
    """Default actor when a request is not authenticated"""
    user, created = User.objects.get_or_create(
        username='system_aggregation',
        defaults={
            'email': 'system@aggregation.local',
            'first_name': 'System',
            'last_name': 'Aggregation'
        }
    )
    return user


def _acting_user(request):
    if request.user and request.user.is_authenticated:
        return request.user
    return get_or_create_system_user()


def _error(message, http_status):
    return Response({'status': 'error', 'message': message}, status=http_status)


def _serialize_amendment(amendment):
    return {
        'id': amendment.pk,
        'amendment_type': amendment.amendment_type,
        'title': amendment.title,
        'amended_value': amendment.amended_value,
        'annotation': amendment.annotation,
        'justification': amendment.justification,
        'executive_summary': amendment.executive_summary,
        'visibility': amendment.visibility,
        'is_active': amendment.is_active,
        'approval_status': amendment.approval_status,
        'amended_by': amendment.amended_by.username,
        'created_at': amendment.created_at.isoformat(),
        'replaced_by': amendment.replaced_by_id,
    }


def _serialize_value(aggregate, resolver):
    return {
        'id': aggregate.pk,
        'rule_id': aggregate.aggregation_rule_id,
        'rule_name': aggregate.aggregation_rule.name,
        'method': aggregate.aggregation_rule.method,
        'period_id': aggregate.report_period_id,
        'org_unit_id': aggregate.organizational_unit_id,
        'org_unit_name': aggregate.organizational_unit.name,
        'value': aggregate.value,
        'numeric_value': str(aggregate.numeric_value) if aggregate.numeric_value is not None else None,
        'display_value': resolver.display_value(aggregate),
        'status': aggregate.status,
        'status_display': aggregate.get_status_display(),
        'source_count': aggregate.source_count,
        'source_report_ids': aggregate.source_report_ids,
        'is_complete': aggregate.is_complete,
        'missing_sources': aggregate.missing_sources,
        'has_amendment': aggregate.has_amendment,
        'needs_recomputation': aggregate.needs_recomputation,
        'computed_at': aggregate.computed_at.isoformat() if aggregate.computed_at else None,
        'details': aggregate.aggregation_details,
    }


@api_view(['GET'])
def list_aggregated_values(request):
    """
    List aggregated values

    GET /api/aggregates/

    Query params:
        period_id, org_unit_id, rule_id, status: filters (optional)
        only_with_amendments: 'true' to keep amended values only
    """
    aggregates = AggregatedValue.objects.select_related(
        'aggregation_rule', 'organizational_unit'
    ).order_by('-computed_at', 'id')

    for param, lookup in [
        ('period_id', 'report_period_id'),
        ('org_unit_id', 'organizational_unit_id'),
        ('rule_id', 'aggregation_rule_id'),
        ('status', 'status'),
    ]:
        value = request.query_params.get(param)
        if value:
            aggregates = aggregates.filter(**{lookup: value})

    if request.query_params.get('only_with_amendments', '').lower() == 'true':
        aggregates = aggregates.filter(has_amendment=True)

    resolver = AmendmentResolver()
    data = [_serialize_value(aggregate, resolver) for aggregate in aggregates[:100]]

    return Response({
        'status': 'success',
        'count': aggregates.count(),
        'stale_count': AggregatedValue.objects.filter(status=AggregatedValue.Status.STALE).count(),
        'with_amendments_count': AggregatedValue.objects.filter(has_amendment=True).count(),
        'aggregates': data,
    })


@api_view(['GET'])
def aggregated_value_detail(request, aggregate_id):
    """
    Drill-down: the value, its amendments and the reports behind it

    GET /api/aggregates/{aggregate_id}/
    """
    try:
        aggregate = AggregatedValue.objects.select_related(
            'aggregation_rule', 'organizational_unit'
        ).get(pk=aggregate_id)
    except AggregatedValue.DoesNotExist:
        return _error('Aggregated value not found', status.HTTP_404_NOT_FOUND)

    source_reports = Report.objects.filter(
        id__in=aggregate.source_report_ids or []
    ).select_related('organizational_unit').order_by('organizational_unit__name')

    amendments = aggregate.amendments.select_related('amended_by')

    return Response({
        'status': 'success',
        'aggregate': _serialize_value(aggregate, AmendmentResolver()),
        'amendments': [_serialize_amendment(a) for a in amendments],
        'source_reports': [
            {
                'id': report.pk,
                'org_unit_id': report.organizational_unit_id,
                'org_unit_name': report.organizational_unit.name,
                'status': report.status,
                'submitted_at': report.submitted_at.isoformat() if report.submitted_at else None,
            }
            for report in source_reports
        ],
    })


@api_view(['GET'])
def display_value(request, aggregate_id):
    """GET /api/aggregates/{aggregate_id}/display/"""
    try:
        value = services.get_display_value(aggregate_id)
    except AggregatedValue.DoesNotExist:
        return _error('Aggregated value not found', status.HTTP_404_NOT_FOUND)
    return Response({'status': 'success', 'id': aggregate_id, 'display_value': value})


@api_view(['POST'])
def compute_aggregate(request):
    """
    Compute one aggregate now

    POST /api/aggregates/compute/

    Body:
        rule_id, org_unit_id, period_id
    """
    try:
        rule_id = int(request.data['rule_id'])
        org_unit_id = int(request.data['org_unit_id'])
        period_id = int(request.data['period_id'])
    except (KeyError, TypeError, ValueError):
        return _error('rule_id, org_unit_id and period_id are required', status.HTTP_400_BAD_REQUEST)

    try:
        aggregate = services.compute(rule_id, org_unit_id, period_id, computed_by=_acting_user(request))
    except ConfigurationError as e:
        return _error(str(e), status.HTTP_400_BAD_REQUEST)

    return Response({'status': 'success', 'aggregate': _serialize_value(aggregate, AmendmentResolver())})


@api_view(['POST'])
def mark_for_recompute(request, aggregate_id):
    """
    Mark a value Stale so the next sweep recomputes it

    POST /api/aggregates/{aggregate_id}/recompute/
    """
    try:
        aggregate = AggregatedValue.objects.get(pk=aggregate_id)
    except AggregatedValue.DoesNotExist:
        return _error('Aggregated value not found', status.HTTP_404_NOT_FOUND)

    if aggregate.status == AggregatedValue.Status.MANUAL_OVERRIDE:
        return _error('Value is a manual override; re-enable it first', status.HTTP_409_CONFLICT)

    StalenessTracker().mark_stale(aggregate, reason=f'requested by {_acting_user(request).username}')
    aggregate.refresh_from_db()
    return Response({'status': 'success', 'id': aggregate.pk, 'aggregate_status': aggregate.status})


@api_view(['POST'])
def create_amendment(request, aggregate_id):
    """
    Add a manager amendment

    POST /api/aggregates/{aggregate_id}/amendments/

    Body:
        amendment_type, annotation, amended_value, amended_numeric_value,
        justification, title, executive_summary, visibility (all optional)
    """
    fields = {}
    for name in ['amendment_type', 'annotation', 'amended_value', 'amended_numeric_value',
                 'justification', 'title', 'executive_summary', 'visibility', 'supporting_data']:
        if name in request.data:
            fields[name] = request.data[name]

    try:
        amendment = services.create_amendment(aggregate_id, _acting_user(request), **fields)
    except AggregatedValue.DoesNotExist:
        return _error('Aggregated value not found', status.HTTP_404_NOT_FOUND)
    except ValueError as e:
        return _error(str(e), status.HTTP_400_BAD_REQUEST)

    return Response({
        'status': 'success',
        'amendment': _serialize_amendment(amendment),
        'display_value': services.get_display_value(aggregate_id),
    }, status=status.HTTP_201_CREATED)


def _resolve_amendment(request, amendment_id, action):
    comments = request.data.get('comments', '')
    try:
        amendment = action(amendment_id, approved_by=_acting_user(request), comments=comments)
    except ManagerAmendment.DoesNotExist:
        return _error('Amendment not found', status.HTTP_404_NOT_FOUND)
    except ConcurrencyConflict as e:
        return _error(str(e), status.HTTP_409_CONFLICT)
    except ValueError as e:
        return _error(str(e), status.HTTP_400_BAD_REQUEST)

    return Response({
        'status': 'success',
        'amendment': _serialize_amendment(amendment),
        'display_value': services.get_display_value(amendment.aggregated_value_id),
    })


@api_view(['POST'])
def approve_amendment(request, amendment_id):
    """POST /api/amendments/{amendment_id}/approve/"""
    return _resolve_amendment(request, amendment_id, services.approve_amendment)


@api_view(['POST'])
def reject_amendment(request, amendment_id):
    """POST /api/amendments/{amendment_id}/reject/"""
    return _resolve_amendment(request, amendment_id, services.reject_amendment)
