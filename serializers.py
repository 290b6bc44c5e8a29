# serializers.py
"""JSON shapes for the API (camelCase keys)."""


def format_date(dt_value):
    """ISO 8601 string; stored timestamps are naive UTC so they get a 'Z' suffix."""
    if dt_value is None:
        return None
    if not hasattr(dt_value, 'isoformat'):
        return str(dt_value)
    iso_str = dt_value.isoformat()
    if getattr(dt_value, 'tzinfo', None) is None:
        iso_str += 'Z'
    return iso_str


def user_brief(user):
    if user is None:
        return None
    return {
        'id': user.id,
        'email': user.email,
        'firstName': user.first_name,
        'lastName': user.last_name,
        'role': user.role,
    }


def user_to_dict(user):
    data = user_brief(user)
    data.update({
        'isActive': bool(user.is_active),
        'createdAt': format_date(user.created_at),
        'updatedAt': format_date(user.updated_at),
    })
    return data


def settings_to_dict(user):
    return {
        'firstName': user.first_name,
        'lastName': user.last_name,
        'email': user.email,
        'phone': user.phone,
        'timezone': user.timezone,
        'language': user.language,
        'theme': user.theme,
        'compactMode': bool(user.compact_mode),
        'emailNotifications': bool(user.email_notifications),
        'pushNotifications': bool(user.push_notifications),
        'smsNotifications': bool(user.sms_notifications),
    }


def ticket_to_dict(ticket):
    return {
        'id': ticket.id,
        'title': ticket.title,
        'description': ticket.description,
        'category': ticket.category,
        'priority': ticket.priority,
        'status': ticket.status,
        'createdById': ticket.created_by_id,
        'assignedToId': ticket.assigned_to_id,
        'contactPhone': ticket.contact_phone,
        'contactPreference': ticket.contact_preference,
        'bestTimeToContact': ticket.best_time_to_contact,
        'location': ticket.location,
        'resolvedAt': format_date(ticket.resolved_at),
        'createdAt': format_date(ticket.created_at),
        'updatedAt': format_date(ticket.updated_at),
        'createdBy': user_brief(ticket.created_by),
        'assignedTo': user_brief(ticket.assigned_to),
    }


def ticket_detail(ticket, comments, attachments):
    data = ticket_to_dict(ticket)
    data['comments'] = [comment_to_dict(c) for c in comments]
    data['attachments'] = [attachment_to_dict(a) for a in attachments]
    return data


def comment_to_dict(comment):
    return {
        'id': comment.id,
        'ticketId': comment.ticket_id,
        'userId': comment.user_id,
        'content': comment.content,
        'isInternal': bool(comment.is_internal),
        'createdAt': format_date(comment.created_at),
        'user': user_brief(comment.author),
    }


def attachment_to_dict(attachment):
    return {
        'id': attachment.id,
        'ticketId': attachment.ticket_id,
        'fileName': attachment.file_name,
        'fileSize': attachment.file_size,
        'mimeType': attachment.mime_type,
        'uploadedById': attachment.uploaded_by_id,
        'uploadedBy': user_brief(attachment.uploaded_by),
        'createdAt': format_date(attachment.created_at),
        'downloadUrl': f'/api/tickets/{attachment.ticket_id}/attachments/{attachment.id}/download',
    }


def article_to_dict(article):
    return {
        'id': article.id,
        'title': article.title,
        'content': article.content,
        'category': article.category,
        'tags': list(article.tags or []),
        'views': article.views,
        'createdById': article.created_by_id,
        'createdBy': user_brief(article.created_by),
        'createdAt': format_date(article.created_at),
        'updatedAt': format_date(article.updated_at),
    }


def notification_to_dict(notification):
    return {
        'id': notification.id,
        'userId': notification.user_id,
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'data': notification.data or {},
        'isRead': bool(notification.is_read),
        'createdAt': format_date(notification.created_at),
    }
