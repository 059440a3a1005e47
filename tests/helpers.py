"""Payload builders and constants shared by the test modules"""
import datetime

USER_ID = 2558286
USERNAME = 'ameo'
T0 = datetime.datetime(2024, 1, 1, 12, 0, 0)

def raw_stats(**overrides):
    """A get_user style payload; numbers are quoted the way the osu! API sends them"""
    payload = {
        'user_id': str(USER_ID),
        'username': USERNAME,
        'count300': '1000000',
        'count100': '100000',
        'count50': '10000',
        'playcount': '100',
        'ranked_score': '5000000000',
        'total_score': '9000000000',
        'pp_rank': '5000',
        'level': '99.5',
        'pp_raw': '4000.25',
        'accuracy': '98.7654',
        'count_rank_ss': '10',
        'count_rank_s': '200',
        'count_rank_a': '300',
        'pp_country_rank': '100',
    }
    payload.update(overrides)
    return payload

def raw_score(**overrides):
    payload = {
        'beatmap_id': '129891',
        'score': '900000',
        'pp': '250.5',
        'enabled_mods': '0',
        'rank': 'A',
        'score_time': '2024-01-01 10:00:00',
    }
    payload.update(overrides)
    return payload
