# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Services package - stateful collaborators and external integrations.
"""

from .mongodb import MongoDBService, get_mongodb_service, close_mongodb_connection
from .amqp import AMQPNotificationSender, create_notification_sender
from .dispatcher import NotificationDispatcher, SendResult, DispatchResult
from .registry import MatchingRegistry
from .repositories import MongoDonorRepository, MongoBloodRequestStore
from .scheduler import EscalationScheduler, MatchingStatistics

__all__ = [
    "MongoDBService",
    "get_mongodb_service",
    "close_mongodb_connection",
    "AMQPNotificationSender",
    "create_notification_sender",
    "NotificationDispatcher",
    "SendResult",
    "DispatchResult",
    "MatchingRegistry",
    "MongoDonorRepository",
    "MongoBloodRequestStore",
    "EscalationScheduler",
    "MatchingStatistics",
]
