import math


def wilson_score(rating, n):
    if n == 0:
        return 0
    z = 1.96
    phat = rating / 5
    return (phat + z*z/(2*n) - z * math.sqrt((phat*(1-phat)+z*z/(4*n))/n)) / (1+z*z/n)


def score(distance_km, radius_km, rating, rating_count, jobs_completed):
    """
    Rank technicians already inside the search radius. Distance dominates so
    the nearest technicians are pinged first; rating and experience break ties.
    """
    geo_score = max(0, 1 - (distance_km / radius_km)) if radius_km > 0 else 0
    rating_score = wilson_score(rating, rating_count)
    experience_score = min(jobs_completed, 100) / 100

    return (
        geo_score * 0.7 +
        rating_score * 0.2 +
        experience_score * 0.1
    )
