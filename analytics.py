# analytics.py
"""Aggregate views for the dashboards, computed per request from the tickets table."""
import logging
from datetime import timedelta

from sqlalchemy import func

from errors import ValidationError
from models import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, TICKET_CATEGORIES, TICKET_PRIORITIES, TICKET_STATUSES,
    Ticket, User, db, utcnow,
)

logger = logging.getLogger(__name__)

SLA_TARGET_HOURS = {
    'critical': 4,
    'high': 24,
    'medium': 72,
    'low': 168,
}
RESOLUTION_WINDOW_DAYS = 30
BUSY_THRESHOLD = 3
OVERLOADED_ABOVE = 80
UNDERUTILIZED_BELOW = 20
WORKLOAD_SORTS = ('workload', 'tickets', 'name')


def hours_between(start, end):
    return (end - start).total_seconds() / 3600


def workload_percentage(assigned, total):
    pct = assigned / max(total, 1) * 100
    return max(0.0, min(pct, 100.0))


def classify_workload(percentage):
    if percentage > OVERLOADED_ABOVE:
        return 'overloaded'
    if percentage < UNDERUTILIZED_BELOW:
        return 'underutilized'
    return 'balanced'


def summarize_workload(percentages):
    """Bucket counts plus the mean; the three buckets always add up to len(percentages)."""
    summary = {'overloaded': 0, 'underutilized': 0, 'balanced': 0}
    for pct in percentages:
        summary[classify_workload(pct)] += 1
    summary['avgWorkload'] = round(sum(percentages) / len(percentages), 2) if percentages else 0
    return summary


def _count_by(column, *where):
    stmt = db.select(column, func.count(Ticket.id)).group_by(column)
    for clause in where:
        stmt = stmt.where(clause)
    return {key: count for key, count in db.session.execute(stmt).all()}


def _recently_resolved(now):
    since = now - timedelta(days=RESOLUTION_WINDOW_DAYS)
    stmt = db.select(Ticket).where(
        Ticket.status.in_(TERMINAL_STATUSES),
        Ticket.resolved_at.is_not(None),
        Ticket.resolved_at >= since,
    )
    return db.session.execute(stmt).scalars().all()


def _within_sla(ticket):
    return hours_between(ticket.created_at, ticket.resolved_at) <= SLA_TARGET_HOURS[ticket.priority]


def ticket_metrics(now=None):
    now = now or utcnow()
    open_tickets = db.session.scalar(
        db.select(func.count(Ticket.id)).where(Ticket.status.in_(ACTIVE_STATUSES))
    )
    critical = db.session.scalar(
        db.select(func.count(Ticket.id)).where(
            Ticket.status.in_(ACTIVE_STATUSES), Ticket.priority == 'critical'
        )
    )

    resolved = _recently_resolved(now)
    if resolved:
        hours = [hours_between(t.created_at, t.resolved_at) for t in resolved]
        avg_resolution = round(sum(hours) / len(hours), 1)
        compliant = sum(1 for t in resolved if _within_sla(t))
        sla_compliance = round(compliant / len(resolved) * 100, 1)
    else:
        avg_resolution = 0
        sla_compliance = 100

    return {
        'openTickets': open_tickets or 0,
        'criticalIssues': critical or 0,
        'avgResolutionTime': avg_resolution,
        'slaCompliance': sla_compliance,
    }


def _active_assigned_counts():
    return _count_by(
        Ticket.assigned_to_id,
        Ticket.status.in_(ACTIVE_STATUSES),
        Ticket.assigned_to_id.is_not(None),
    )


def team_status():
    members = db.session.execute(
        db.select(User).where(User.role.in_(['it_staff', 'manager'])).order_by(User.id)
    ).scalars().all()
    counts = _active_assigned_counts()
    result = []
    for member in members:
        active = counts.get(member.id, 0)
        result.append({
            'id': member.id,
            'name': member.display_name,
            'email': member.email,
            'role': member.role,
            'activeTickets': active,
            'status': 'busy' if active > BUSY_THRESHOLD else 'available',
        })
    return result


def sla_performance(now=None):
    now = now or utcnow()
    resolved = _recently_resolved(now)
    result = {}
    for priority in reversed(TICKET_PRIORITIES):
        subset = [t for t in resolved if t.priority == priority]
        breached = sum(1 for t in subset if not _within_sla(t))
        total = len(subset)
        result[priority] = {
            'percentage': round((total - breached) / total * 100, 1) if total else 100,
            'total': total,
            'breached': breached,
            'targetHours': SLA_TARGET_HOURS[priority],
        }
    return result


def workload(sort_by='workload'):
    if sort_by not in WORKLOAD_SORTS:
        raise ValidationError(f'Invalid sortBy: {sort_by}')

    total = db.session.scalar(db.select(func.count(Ticket.id))) or 0
    members = db.session.execute(
        db.select(User).where(User.role.in_(['it_staff', 'manager', 'admin'])).order_by(User.id)
    ).scalars().all()

    rows = db.session.execute(
        db.select(Ticket.assigned_to_id, Ticket.status, func.count(Ticket.id))
        .where(Ticket.assigned_to_id.is_not(None))
        .group_by(Ticket.assigned_to_id, Ticket.status)
    ).all()
    per_member = {}
    for user_id, status, count in rows:
        per_member.setdefault(user_id, {})[status] = count

    team = []
    percentages = []
    for member in members:
        statuses = per_member.get(member.id, {})
        assigned = sum(statuses.values())
        pct = workload_percentage(assigned, total)
        percentages.append(pct)
        team.append({
            'id': member.id,
            'name': member.display_name,
            'firstName': member.first_name,
            'lastName': member.last_name,
            'email': member.email,
            'role': member.role,
            'ticketsAssigned': assigned,
            'ticketsResolved': statuses.get('resolved', 0) + statuses.get('closed', 0),
            'ticketsInProgress': statuses.get('in_progress', 0),
            'ticketsPending': statuses.get('pending', 0),
            'workloadPercentage': round(pct, 2),
            'workloadStatus': classify_workload(pct),
        })

    if sort_by == 'workload':
        team.sort(key=lambda m: m['workloadPercentage'], reverse=True)
    elif sort_by == 'tickets':
        team.sort(key=lambda m: m['ticketsAssigned'], reverse=True)
    else:
        team.sort(key=lambda m: m['name'].lower())

    summary = summarize_workload(percentages)
    by_status = _count_by(Ticket.status)
    distribution = [
        {
            'status': status,
            'count': by_status.get(status, 0),
            'percentage': round(by_status.get(status, 0) / total * 100, 2) if total else 0,
        }
        for status in TICKET_STATUSES
    ]

    return {
        'teamMembers': team,
        'metrics': {
            'totalTeamMembers': len(team),
            'totalTickets': total,
            'avgWorkload': summary['avgWorkload'],
            'overloadedMembers': summary['overloaded'],
            'underutilizedMembers': summary['underutilized'],
            'balancedWorkload': summary['balanced'],
        },
        'distribution': distribution,
    }


def breakdown():
    by_status = _count_by(Ticket.status)
    by_priority = _count_by(Ticket.priority)
    by_category = _count_by(Ticket.category)
    total = sum(by_status.values())
    done = sum(by_status.get(s, 0) for s in TERMINAL_STATUSES)
    return {
        'total': total,
        'byStatus': {s: by_status.get(s, 0) for s in TICKET_STATUSES},
        'byPriority': {p: by_priority.get(p, 0) for p in TICKET_PRIORITIES},
        'byCategory': {c: by_category.get(c, 0) for c in TICKET_CATEGORIES},
        'resolutionRate': round(done / total * 100) if total else 0,
    }
