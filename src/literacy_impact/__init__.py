"""
Literacy Impact Monitoring

Field records (trainings, coaching visits, EGRA assessments, story activity)
rolled up into school, district, sub-region, region and country impact
statistics for public dashboards and donor reporting.
"""

__version__ = "0.1.0"
