"""
Kafka Module
Amazon MSK with SASL/SCRAM authentication and KMS-encrypted credentials
"""

from .functions import create_kafka_resources

__all__ = ["create_kafka_resources"]
