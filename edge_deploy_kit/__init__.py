"""
edge_deploy_kit
---------------

Cloudflare Workers 용 배포 CLI 패키지.
API 토큰/계정/존 확보, D1 데이터베이스와 워커 시크릿 준비, 6단계 사전 검증,
`wrangler deploy` 실행, 배포 후 점검까지를 한 번에 수행하고
모든 원격 변경을 감사 로그와 롤백 계획으로 남긴다.
"""

__all__ = [
    "config",
    "orchestrator",
]
