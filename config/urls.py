"""
URL configuration for the reporting platform
"""
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('aggregation.urls')),
]
