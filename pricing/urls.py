from django.urls import path
from . import views

urlpatterns = [
    # Fare calculation
    path("api/pricing/calculate/", views.calculate, name="calculate_price"),

    # Route distance cache
    path("api/trains/<int:train_id>/route-distances/", views.route_distances, name="route_distances"),
    path("api/route-distances/batch-calculate/", views.batch_route_distances, name="batch_route_distances"),

    # Fare range tables: distance, train, ac, bogie-ac, berth
    path("api/fares/<slug:category>/ranges/", views.fare_ranges, name="fare_ranges"),
    path("api/fares/<slug:category>/ranges/<int:range_id>/", views.fare_range_detail, name="fare_range_detail"),
]
