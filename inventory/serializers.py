"""
Serializers for catalog items nested in order payloads.
"""
from rest_framework import serializers
from .models import Product


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested representations."""
    class Meta:
        model = Product
        fields = ['id', 'title', 'price']
